"""
Domain types for in-flight device authorization requests.
Status is a closed enum; "expired" is derived from expires_at, never stored.
"""
import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self is not AuthorizationStatus.PENDING


@dataclass(frozen=True)
class TokenBundle:
    """Tokens produced by the identity provider; carried through unread."""
    access_token: str
    id_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "TokenBundle(<redacted>)"


@dataclass(frozen=True)
class AuthorizationRequest:
    device_code: str
    user_code: str  # normalized
    client_id: str
    scope: str
    expires_at: datetime
    interval: int
    status: AuthorizationStatus = AuthorizationStatus.PENDING
    subject_id: str | None = None
    tokens: TokenBundle | None = None
    created_at: datetime | None = None

    def __post_init__(self):
        authorized = self.status is AuthorizationStatus.AUTHORIZED
        if authorized != (self.subject_id is not None and self.tokens is not None):
            raise ValueError("subject_id and tokens must be set exactly when status is authorized")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def with_status(
        self,
        status: AuthorizationStatus,
        subject_id: str | None = None,
        tokens: TokenBundle | None = None,
    ) -> "AuthorizationRequest":
        return replace(self, status=status, subject_id=subject_id, tokens=tokens)
