"""
Pytest configuration for device_server. In-memory SQLite so tests don't touch the filesystem.
"""
import os
from datetime import datetime, timedelta, timezone

import pytest

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["DEVICE_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DEVICE_STORE_BACKEND"] = "sql"
# Avoid seeding unexpected clients from the developer's environment
for _name in ("DEVICE_SEED_CLIENT_ID", "DEVICE_SEED_CLIENT_SECRET"):
    os.environ.pop(_name, None)

from device_server import rate_limit  # noqa: E402
from device_server.identity import BearerVerifier, InvalidBearer  # noqa: E402


class FakeClock:
    """Settable UTC clock; stores and the service read time only through this."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StaticVerifier(BearerVerifier):
    """Accepts a fixed set of bearer tokens, each mapped to a subject."""

    def __init__(self, subjects: dict[str, str]):
        self.subjects = subjects

    def verify(self, token: str) -> str:
        try:
            return self.subjects[token]
        except KeyError:
            raise InvalidBearer("unknown token") from None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier():
    return StaticVerifier({"good-access-token": "user-123", "other-access-token": "user-456"})


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    rate_limit.reset()
    yield
    rate_limit.reset()
