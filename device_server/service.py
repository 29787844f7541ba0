"""
Device Authorization Service: issue, authorize/deny, poll (RFC 8628 §3).

State machine per record: pending -> authorized | denied, with expiry as an orthogonal
condition checked before status on every operation. All cross-request coordination goes
through the store's atomic primitives (create, transition, fetch_and_delete); the service
keeps no state of its own between calls.
"""
import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from device_server.codes import is_valid_user_code, issue_codes, normalize_user_code
from device_server.config import (
    ALLOWED_SCOPES,
    CODE_MAX_ATTEMPTS,
    DEFAULT_SCOPE,
    DEVICE_CODE_EXPIRES_IN,
    POLL_INTERVAL,
)
from device_server.domain import AuthorizationRequest, AuthorizationStatus, TokenBundle
from device_server.errors import (
    AlreadyActedOn,
    CodeGenerationExhausted,
    ExpiredCode,
    InvalidClient,
    InvalidRequest,
    InvalidScope,
    NotFound,
    ServiceUnavailable,
    Unauthenticated,
)
from device_server.identity import BearerVerifier, InvalidBearer, VerifierUnavailable
from device_server.store import AlreadyExists, DeviceCodeStore, InvalidState, StoreUnavailable

logger = logging.getLogger(__name__)


class PollOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    PENDING = "pending"
    DENIED = "denied"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    CLIENT_MISMATCH = "client_mismatch"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    tokens: TokenBundle | None = None  # only for DELIVERED


class DeviceAuthorizationService:
    def __init__(
        self,
        store: DeviceCodeStore,
        verifier: BearerVerifier,
        *,
        expires_in: int = DEVICE_CODE_EXPIRES_IN,
        interval: int = POLL_INTERVAL,
        allowed_scopes: set[str] | frozenset[str] = frozenset(ALLOWED_SCOPES),
        default_scope: str = DEFAULT_SCOPE,
        client_exists: Callable[[str], bool] | None = None,
        max_attempts: int = CODE_MAX_ATTEMPTS,
    ):
        self.store = store
        self.verifier = verifier
        self.clock = store.clock
        self.expires_in = expires_in
        self.interval = interval
        self.allowed_scopes = allowed_scopes
        self.default_scope = default_scope
        self.client_exists = client_exists
        self.max_attempts = max_attempts

    @contextmanager
    def _store_faults(self):
        try:
            yield
        except StoreUnavailable as e:
            raise ServiceUnavailable("store unavailable") from e

    def _normalize_scope(self, scope: str | None) -> str:
        if not scope or not scope.strip():
            scope = self.default_scope
        requested = set(scope.split())
        invalid = requested - set(self.allowed_scopes)
        if invalid:
            raise InvalidScope(f"Invalid scope(s): {', '.join(sorted(invalid))}")
        return " ".join(sorted(requested))

    def issue(self, client_id: str | None, scope: str | None = None) -> AuthorizationRequest:
        """Create a pending request. The returned user_code is normalized; format it for display."""
        client_id = (client_id or "").strip()
        if not client_id:
            raise InvalidRequest("client_id is required")
        if self.client_exists is not None and not self.client_exists(client_id):
            raise InvalidClient("Unknown client_id")
        normalized_scope = self._normalize_scope(scope)

        with self._store_faults():
            self.store.purge_expired()
            for attempt in range(1, self.max_attempts + 1):
                device_code, user_code = issue_codes()
                now = self.clock()
                record = AuthorizationRequest(
                    device_code=device_code,
                    user_code=normalize_user_code(user_code),
                    client_id=client_id,
                    scope=normalized_scope,
                    expires_at=now + timedelta(seconds=self.expires_in),
                    interval=self.interval,
                    created_at=now,
                )
                try:
                    self.store.create(record)
                except AlreadyExists:
                    logger.warning("Device code collision for client_id=%s (attempt %s)", client_id, attempt)
                    continue
                logger.info("Issued device code for client_id=%s scope=%s", client_id, normalized_scope)
                return record
        logger.error("Gave up issuing device code after %s attempts", self.max_attempts)
        raise CodeGenerationExhausted("could not allocate unique codes")

    def _live_by_user_code(self, user_code: str | None) -> AuthorizationRequest:
        if not user_code or not is_valid_user_code(user_code):
            raise InvalidRequest("Invalid user_code")
        with self._store_faults():
            record = self.store.get_by_user_code(user_code, include_expired=True)
        if record is None:
            raise NotFound("User code not found")
        if record.is_expired(self.clock()):
            raise ExpiredCode("User code has expired")
        return record

    def _verify(self, bearer: str | None) -> str:
        try:
            return self.verifier.verify(bearer or "")
        except InvalidBearer as e:
            raise Unauthenticated("bearer rejected") from e
        except VerifierUnavailable as e:
            raise ServiceUnavailable("identity provider unavailable") from e

    def _finish(
        self,
        record: AuthorizationRequest,
        status: AuthorizationStatus,
        subject_id: str | None = None,
        tokens: TokenBundle | None = None,
    ) -> AuthorizationRequest:
        if record.status.is_terminal:
            raise AlreadyActedOn(f"Device code is already {record.status.value}")
        try:
            with self._store_faults():
                return self.store.transition(record.device_code, status, subject_id=subject_id, tokens=tokens)
        except InvalidState:
            # Lost the race, or the deadline passed since our read
            if record.is_expired(self.clock()):
                raise ExpiredCode("User code has expired")
            raise AlreadyActedOn("Device code was already authorized or denied")

    def authorize(self, user_code: str | None, bearer: str | None, tokens: TokenBundle | None) -> AuthorizationRequest:
        """Attach the second screen's tokens to the pending request. Exactly one concurrent caller wins."""
        if tokens is None or not (tokens.access_token and tokens.id_token and tokens.refresh_token):
            raise InvalidRequest("access_token, id_token and refresh_token are required")
        record = self._live_by_user_code(user_code)
        subject_id = self._verify(bearer)
        updated = self._finish(record, AuthorizationStatus.AUTHORIZED, subject_id=subject_id, tokens=tokens)
        logger.info("Device authorized for client_id=%s sub=%s", record.client_id, subject_id)
        return updated

    def deny(self, user_code: str | None, bearer: str | None) -> tuple[AuthorizationRequest, str]:
        """User rejected the device on the second screen. Returns (record, subject who denied)."""
        record = self._live_by_user_code(user_code)
        subject_id = self._verify(bearer)
        updated = self._finish(record, AuthorizationStatus.DENIED)
        logger.info("Device denied for client_id=%s sub=%s", record.client_id, subject_id)
        return updated, subject_id

    def _delete_quietly(self, device_code: str) -> None:
        try:
            self.store.delete(device_code)
        except StoreUnavailable:
            logger.warning("Could not delete device code %s...; the expiry sweep will", device_code[:6])

    def poll(self, device_code: str, client_id: str) -> PollResult:
        """One poll from the device. Tokens are handed out by exactly one call, ever."""
        with self._store_faults():
            record = self.store.get_by_device_code(device_code, include_expired=True)
            if record is None:
                return PollResult(PollOutcome.NOT_FOUND)
            # Before anything status-related so a wrong client learns nothing about the code
            if record.client_id != client_id:
                logger.warning("Poll with mismatched client_id=%s", client_id)
                return PollResult(PollOutcome.CLIENT_MISMATCH)
            if record.is_expired(self.clock()):
                self._delete_quietly(device_code)
                return PollResult(PollOutcome.EXPIRED)

            if record.status is AuthorizationStatus.PENDING:
                return PollResult(PollOutcome.PENDING)
            if record.status is AuthorizationStatus.DENIED:
                self.store.delete(device_code)
                return PollResult(PollOutcome.DENIED)
            if record.status is AuthorizationStatus.AUTHORIZED:
                delivered = self.store.fetch_and_delete(device_code)
                if delivered is None:
                    return PollResult(PollOutcome.NOT_FOUND)
                logger.info("Tokens delivered to client_id=%s", client_id)
                return PollResult(PollOutcome.DELIVERED, tokens=delivered.tokens)
        raise AssertionError(f"unhandled status {record.status!r}")
