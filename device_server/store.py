"""
Storage for in-flight device authorization requests.

Two backends share one contract:
- MemoryDeviceCodeStore: dict + user_code index behind a lock (single process, tests).
- SqlDeviceCodeStore: SQLAlchemy rows; transition and fetch_and_delete are conditional
  single-row UPDATE/DELETE statements, the row count picks the one winner.

Reads never return a record past expires_at unless the caller asks for it explicitly
(include_expired=True), and even then no write primitive accepts an expired record.
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import insert, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from device_server.codes import normalize_user_code
from device_server.domain import AuthorizationRequest, AuthorizationStatus, TokenBundle, utc_now
from device_server.models import DeviceAuthorization

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class StoreError(Exception):
    pass


class AlreadyExists(StoreError):
    """device_code or user_code already held by a live record."""


class InvalidState(StoreError):
    """Conditional write refused: record absent, already terminal, or expired."""


class StoreUnavailable(StoreError):
    """Backing store failed (connection, timeout, ...)."""


def _check_transition(status: AuthorizationStatus, subject_id: str | None, tokens: TokenBundle | None) -> None:
    if status is AuthorizationStatus.PENDING:
        raise ValueError("a record never re-enters pending")
    if status is AuthorizationStatus.AUTHORIZED:
        if subject_id is None or tokens is None:
            raise ValueError("authorized requires subject_id and tokens")
    elif subject_id is not None or tokens is not None:
        raise ValueError("subject_id and tokens are only stored for authorized")


class DeviceCodeStore(ABC):
    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    @abstractmethod
    def create(self, record: AuthorizationRequest) -> None:
        """Persist a new pending record. Raises AlreadyExists on a live code collision."""

    @abstractmethod
    def get_by_device_code(self, device_code: str, include_expired: bool = False) -> AuthorizationRequest | None:
        ...

    @abstractmethod
    def get_by_user_code(self, user_code: str, include_expired: bool = False) -> AuthorizationRequest | None:
        ...

    @abstractmethod
    def transition(
        self,
        device_code: str,
        status: AuthorizationStatus,
        subject_id: str | None = None,
        tokens: TokenBundle | None = None,
    ) -> AuthorizationRequest:
        """Atomically move a live pending record to a terminal status. Raises InvalidState otherwise."""

    @abstractmethod
    def fetch_and_delete(self, device_code: str) -> AuthorizationRequest | None:
        """Atomically remove a live authorized record and return it; None for every other caller."""

    @abstractmethod
    def delete(self, device_code: str) -> None:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Remove every record past expires_at. Returns how many were removed."""


class MemoryDeviceCodeStore(DeviceCodeStore):
    def __init__(self, clock: Clock = utc_now):
        super().__init__(clock)
        self._records: dict[str, AuthorizationRequest] = {}
        self._by_user_code: dict[str, str] = {}
        self._lock = threading.Lock()

    def _remove(self, device_code: str) -> AuthorizationRequest | None:
        record = self._records.pop(device_code, None)
        if record is not None and self._by_user_code.get(record.user_code) == device_code:
            del self._by_user_code[record.user_code]
        return record

    def _drop_if_expired(self, device_code: str | None, now: datetime) -> None:
        if device_code is None:
            return
        record = self._records.get(device_code)
        if record is not None and record.is_expired(now):
            self._remove(device_code)

    def create(self, record: AuthorizationRequest) -> None:
        with self._lock:
            now = self.clock()
            self._drop_if_expired(record.device_code, now)
            self._drop_if_expired(self._by_user_code.get(record.user_code), now)
            if record.device_code in self._records or record.user_code in self._by_user_code:
                raise AlreadyExists("code already in use")
            self._records[record.device_code] = record
            self._by_user_code[record.user_code] = record.device_code

    def _live(self, device_code: str | None, include_expired: bool) -> AuthorizationRequest | None:
        if device_code is None:
            return None
        record = self._records.get(device_code)
        if record is None:
            return None
        if not include_expired and record.is_expired(self.clock()):
            return None
        return record

    def get_by_device_code(self, device_code, include_expired=False):
        with self._lock:
            return self._live(device_code, include_expired)

    def get_by_user_code(self, user_code, include_expired=False):
        with self._lock:
            return self._live(self._by_user_code.get(normalize_user_code(user_code)), include_expired)

    def transition(self, device_code, status, subject_id=None, tokens=None):
        _check_transition(status, subject_id, tokens)
        with self._lock:
            record = self._live(device_code, include_expired=False)
            if record is None or record.status.is_terminal:
                raise InvalidState(f"cannot move to {status.value}")
            updated = record.with_status(status, subject_id=subject_id, tokens=tokens)
            self._records[device_code] = updated
            return updated

    def fetch_and_delete(self, device_code):
        with self._lock:
            record = self._live(device_code, include_expired=False)
            if record is None or record.status is not AuthorizationStatus.AUTHORIZED:
                return None
            return self._remove(device_code)

    def delete(self, device_code):
        with self._lock:
            self._remove(device_code)

    def purge_expired(self):
        with self._lock:
            now = self.clock()
            expired = [code for code, r in self._records.items() if r.is_expired(now)]
            for code in expired:
                self._remove(code)
            return len(expired)


def _to_db_time(value: datetime) -> datetime:
    """Columns hold naive UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _to_record(row: DeviceAuthorization) -> AuthorizationRequest:
    tokens = None
    if row.access_token is not None:
        tokens = TokenBundle(
            access_token=row.access_token,
            id_token=row.id_token or "",
            refresh_token=row.refresh_token or "",
        )
    return AuthorizationRequest(
        device_code=row.device_code,
        user_code=row.user_code,
        client_id=row.client_id,
        scope=row.scope,
        expires_at=_from_db_time(row.expires_at),
        interval=row.interval,
        status=AuthorizationStatus(row.status),
        subject_id=row.subject_id,
        tokens=tokens,
        created_at=_from_db_time(row.created_at),
    )


class SqlDeviceCodeStore(DeviceCodeStore):
    """Store backed by the device_authorizations table. One instance per request session."""

    def __init__(self, db: Session, clock: Clock = utc_now):
        super().__init__(clock)
        self._db = db

    @contextmanager
    def _guard(self):
        try:
            yield
        except SQLAlchemyError as e:
            self._db.rollback()
            logger.error("Device code store failure: %s", e.__class__.__name__)
            raise StoreUnavailable("device code store unavailable") from e

    def _now(self) -> datetime:
        return _to_db_time(self.clock())

    def _query(self):
        return self._db.query(DeviceAuthorization)

    def create(self, record):
        now = self._now()
        with self._guard():
            # Expired holders of either code no longer count as live
            self._query().filter(
                or_(
                    DeviceAuthorization.device_code == record.device_code,
                    DeviceAuthorization.user_code == record.user_code,
                ),
                DeviceAuthorization.expires_at <= now,
            ).delete(synchronize_session=False)
            try:
                # Core insert: the unique constraints are the collision check, also across processes
                self._db.execute(
                    insert(DeviceAuthorization).values(
                        device_code=record.device_code,
                        user_code=record.user_code,
                        client_id=record.client_id,
                        scope=record.scope,
                        status=record.status.value,
                        interval=record.interval,
                        expires_at=_to_db_time(record.expires_at),
                        created_at=_to_db_time(record.created_at or self.clock()),
                    )
                )
                self._db.commit()
            except IntegrityError as e:
                self._db.rollback()
                raise AlreadyExists("code already in use") from e

    def _get(self, criterion, include_expired: bool) -> AuthorizationRequest | None:
        with self._guard():
            q = self._query().filter(criterion)
            if not include_expired:
                q = q.filter(DeviceAuthorization.expires_at > self._now())
            row = q.first()
            return _to_record(row) if row else None

    def get_by_device_code(self, device_code, include_expired=False):
        return self._get(DeviceAuthorization.device_code == device_code, include_expired)

    def get_by_user_code(self, user_code, include_expired=False):
        return self._get(DeviceAuthorization.user_code == normalize_user_code(user_code), include_expired)

    def transition(self, device_code, status, subject_id=None, tokens=None):
        _check_transition(status, subject_id, tokens)
        values = {"status": status.value, "subject_id": subject_id}
        if tokens is not None:
            values.update(
                access_token=tokens.access_token,
                id_token=tokens.id_token,
                refresh_token=tokens.refresh_token,
            )
        snapshot = self.get_by_device_code(device_code)
        if snapshot is None:
            raise InvalidState(f"cannot move to {status.value}")
        with self._guard():
            count = self._query().filter(
                DeviceAuthorization.device_code == device_code,
                DeviceAuthorization.status == AuthorizationStatus.PENDING.value,
                DeviceAuthorization.expires_at > self._now(),
            ).update(values, synchronize_session=False)
            self._db.commit()
        if count != 1:
            raise InvalidState(f"cannot move to {status.value}")
        # Only status/subject/tokens change, so the snapshot plus the new values is the stored row
        return snapshot.with_status(status, subject_id=subject_id, tokens=tokens)

    def fetch_and_delete(self, device_code):
        with self._guard():
            row = self._query().filter(
                DeviceAuthorization.device_code == device_code,
                DeviceAuthorization.status == AuthorizationStatus.AUTHORIZED.value,
                DeviceAuthorization.expires_at > self._now(),
            ).first()
            if row is None:
                return None
            record = _to_record(row)
            count = self._query().filter(
                DeviceAuthorization.device_code == device_code,
                DeviceAuthorization.status == AuthorizationStatus.AUTHORIZED.value,
            ).delete(synchronize_session=False)
            self._db.commit()
        return record if count == 1 else None

    def delete(self, device_code):
        with self._guard():
            self._query().filter(DeviceAuthorization.device_code == device_code).delete(synchronize_session=False)
            self._db.commit()

    def purge_expired(self):
        with self._guard():
            count = self._query().filter(
                DeviceAuthorization.expires_at <= self._now()
            ).delete(synchronize_session=False)
            self._db.commit()
        if count:
            logger.info("Purged %s expired device code(s)", count)
        return count
