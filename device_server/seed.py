"""
Seed device clients from environment. No hardcoded credentials.
Optional: DEVICE_SEED_CLIENT_ID (+ DEVICE_SEED_CLIENT_SECRET for a confidential client).
"""
import logging
import os

import bcrypt
from sqlalchemy.orm import Session

from device_server.models import Client

logger = logging.getLogger(__name__)

DEFAULT_DEV_CLIENT_ID = "device-client"


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.checkpw(raw, hashed.encode("utf-8"))


def ensure_client(db: Session, client_id: str, client_secret: str | None = None, name: str | None = None) -> Client:
    """Register client_id if missing; returns the (possibly existing) row."""
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if client is not None:
        logger.debug("Client already exists: %s", client_id)
        return client
    secret_hash = hash_password(client_secret) if client_secret else None
    client = Client(client_id=client_id, name=name, client_secret_hash=secret_hash)
    db.add(client)
    db.commit()
    logger.info("Seeded client: %s (confidential=%s)", client_id, bool(secret_hash))
    return client


def seed_from_env(db: Session) -> None:
    """Create the env-configured client (if any) and the public development client."""
    client_id = os.environ.get("DEVICE_SEED_CLIENT_ID")
    if client_id:
        ensure_client(db, client_id.strip(), os.environ.get("DEVICE_SEED_CLIENT_SECRET"))

    # Development fallback so device_client works out of the box
    ensure_client(db, DEFAULT_DEV_CLIENT_ID, name="Development device")
