"""
Audit logging for the device flow. Security-relevant events only; no tokens or device codes.
GET /audit lists recent events (lab/dev use; do not expose in production).
Writes are best-effort: a failed insert is rolled back and logged, never raised.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from device_server.database import get_db
from device_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_CODE_ISSUED = "device_code_issued"
EVENT_DEVICE_AUTHORIZED = "device_authorized"
EVENT_DEVICE_DENIED = "device_denied"
EVENT_AUTHORIZE_FAIL = "device_authorize_fail"
EVENT_TOKEN_DELIVERED = "device_token_delivered"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    subject_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens."""
    try:
        db.add(
            AuditLog(
                event_type=event_type,
                client_id=client_id,
                subject_id=subject_id,
                ip=ip,
                outcome=outcome,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Audit write failed for %s (client=%s): %s", event_type, client_id, e)


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    db: Session = Depends(get_db),
):
    """Recent audit events, most recent first, optionally filtered."""
    q = db.query(AuditLog).order_by(AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    if client_id:
        q = q.filter(AuditLog.client_id == client_id)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "client_id": r.client_id,
            "subject_id": r.subject_id,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]
