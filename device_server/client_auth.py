"""
Client lookup and authentication for device clients. RFC 6749 §2.3.1.
Devices are usually public clients; a confidential one must also send its secret,
via Authorization: Basic base64(client_id:client_secret) or client_secret in the body.
"""
import base64
import binascii
import logging

from fastapi import Request
from sqlalchemy.orm import Session

from device_server.errors import OAuthError
from device_server.models import Client
from device_server.seed import verify_password

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header_value.strip()[6:].strip()).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id.strip(), client_secret


def client_registered(db: Session, client_id: str) -> bool:
    return db.query(Client.id).filter(Client.client_id == client_id).first() is not None


def authenticate_poll_client(
    db: Session,
    request: Request,
    client_id: str,
    client_secret: str | None,
) -> None:
    """
    Confidential clients must prove their secret before polling. Public and unknown
    client_ids pass through: the record's client_id check decides those.
    """
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if client is None or not client.is_confidential:
        return
    if client_secret is None:
        basic = _parse_basic(request.headers.get("Authorization"))
        if basic and basic[0] == client_id:
            client_secret = basic[1]
    if not client_secret or not verify_password(client_secret, client.client_secret_hash):
        logger.warning("Client authentication failed for client_id=%s", client_id)
        raise OAuthError(
            401,
            "invalid_client",
            "Invalid client credentials",
            {"WWW-Authenticate": "Basic"},
        )
