"""
Device flow endpoints (RFC 8628).
POST /device/code: device asks for codes. POST /device/token: device polls.
POST /device/authorize and /device/deny: called by the second screen after the user logs in.
JSON bodies; every response is no-store.
"""
import logging
import threading
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from device_server.audit import (
    EVENT_AUTHORIZE_FAIL,
    EVENT_CODE_ISSUED,
    EVENT_DEVICE_AUTHORIZED,
    EVENT_DEVICE_DENIED,
    EVENT_TOKEN_DELIVERED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from device_server.client_auth import authenticate_poll_client, client_registered
from device_server.codes import format_user_code, is_valid_device_code
from device_server.config import (
    RATE_LIMIT_AUTHORIZE_PER_MINUTE,
    RATE_LIMIT_CODE_PER_MINUTE,
    STORE_BACKEND,
    TOKEN_EXPIRES_IN,
    VERIFICATION_URI,
)
from device_server.database import get_db
from device_server.domain import TokenBundle
from device_server.errors import (
    NO_STORE_HEADERS,
    DeviceFlowError,
    OAuthError,
    ServiceUnavailable,
    oauth_error_from,
)
from device_server.identity import BearerVerifier, get_verifier
from device_server.rate_limit import check_and_consume
from device_server.service import DeviceAuthorizationService, PollOutcome
from device_server.store import DeviceCodeStore, MemoryDeviceCodeStore, SqlDeviceCodeStore

logger = logging.getLogger(__name__)
router = APIRouter()

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

_store_lock = threading.Lock()


class DeviceCodeRequest(BaseModel):
    client_id: str | None = None
    scope: str | None = None


class DeviceCodeResponse(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


class DeviceTokenRequest(BaseModel):
    grant_type: str | None = None
    device_code: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class DeviceTokenResponse(BaseModel):
    access_token: str
    id_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class DeviceAuthorizeRequest(BaseModel):
    user_code: str | None = None
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None


class DeviceDenyRequest(BaseModel):
    user_code: str | None = None
    access_token: str | None = None


class DeviceActionResponse(BaseModel):
    success: bool
    message: str


def get_store(request: Request, db: Session = Depends(get_db)) -> DeviceCodeStore:
    """Dependency: the configured device code store."""
    if STORE_BACKEND == "memory":
        store = getattr(request.app.state, "device_store", None)
        if store is None:
            # Lifespan not run (e.g. TestClient without context manager)
            with _store_lock:
                store = getattr(request.app.state, "device_store", None)
                if store is None:
                    store = request.app.state.device_store = MemoryDeviceCodeStore()
        return store
    return SqlDeviceCodeStore(db)


def get_service(
    db: Session = Depends(get_db),
    store: DeviceCodeStore = Depends(get_store),
    verifier: BearerVerifier = Depends(get_verifier),
) -> DeviceAuthorizationService:
    return DeviceAuthorizationService(
        store,
        verifier,
        client_exists=lambda client_id: client_registered(db, client_id),
    )


def _rate_limit(request: Request, bucket: str, limit: int) -> None:
    key = f"{bucket}:{get_client_ip(request) or 'unknown'}"
    allowed, retry_after = check_and_consume(key, limit)
    if not allowed:
        raise OAuthError(
            429,
            "too_many_requests",
            "Too many requests. Try again later.",
            {"Retry-After": str(retry_after)},
        )


def _no_store(response: Response) -> None:
    response.headers.update(NO_STORE_HEADERS)


@router.post("/device/code", response_model=DeviceCodeResponse)
def device_code(
    body: DeviceCodeRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    service: DeviceAuthorizationService = Depends(get_service),
):
    """Device Authorization Request (RFC 8628 §3.1-3.2)."""
    _rate_limit(request, "device_code", RATE_LIMIT_CODE_PER_MINUTE)
    try:
        record = service.issue(body.client_id, body.scope)
    except DeviceFlowError as e:
        raise oauth_error_from(e) from e

    log_audit(db, EVENT_CODE_ISSUED, client_id=record.client_id, ip=get_client_ip(request))
    _no_store(response)
    # Stored normalized; shown with a hyphen for readability
    user_code = format_user_code(record.user_code)
    return DeviceCodeResponse(
        device_code=record.device_code,
        user_code=user_code,
        verification_uri=VERIFICATION_URI,
        verification_uri_complete=f"{VERIFICATION_URI}?{urlencode({'user_code': user_code})}",
        expires_in=service.expires_in,
        interval=record.interval,
    )


_POLL_ERRORS = {
    PollOutcome.PENDING: ("authorization_pending", "Authorization pending. Continue polling."),
    PollOutcome.DENIED: ("access_denied", "User denied authorization"),
    PollOutcome.EXPIRED: ("expired_token", "Device code has expired"),
    PollOutcome.NOT_FOUND: ("invalid_grant", "Device code not found"),
    PollOutcome.CLIENT_MISMATCH: ("invalid_grant", "client_id mismatch"),
}


@router.post("/device/token", response_model=DeviceTokenResponse)
def device_token(
    body: DeviceTokenRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    service: DeviceAuthorizationService = Depends(get_service),
):
    """Device Access Token Request (RFC 8628 §3.4-3.5). The device polls here every `interval` seconds."""
    if not body.grant_type:
        raise OAuthError(400, "invalid_request", "grant_type is required")
    if body.grant_type != DEVICE_GRANT_TYPE:
        raise OAuthError(400, "unsupported_grant_type", f"grant_type must be {DEVICE_GRANT_TYPE}")
    if not body.client_id:
        raise OAuthError(400, "invalid_request", "client_id is required")
    if not is_valid_device_code(body.device_code):
        raise OAuthError(400, "invalid_request", "Invalid device_code")

    authenticate_poll_client(db, request, body.client_id, body.client_secret)
    try:
        result = service.poll(body.device_code.lower(), body.client_id)
    except DeviceFlowError as e:
        raise oauth_error_from(e) from e

    if result.outcome is PollOutcome.DELIVERED:
        if result.tokens is None:
            raise oauth_error_from(ServiceUnavailable("tokens missing on authorized record"))
        log_audit(db, EVENT_TOKEN_DELIVERED, client_id=body.client_id, ip=get_client_ip(request))
        _no_store(response)
        return DeviceTokenResponse(
            access_token=result.tokens.access_token,
            id_token=result.tokens.id_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=TOKEN_EXPIRES_IN,
        )
    error, description = _POLL_ERRORS[result.outcome]
    raise OAuthError(400, error, description)


def _audit_failure(db: Session, request: Request, exc: DeviceFlowError) -> None:
    if isinstance(exc, ServiceUnavailable):
        return
    log_audit(db, EVENT_AUTHORIZE_FAIL, ip=get_client_ip(request), outcome=OUTCOME_FAIL)


@router.post("/device/authorize", response_model=DeviceActionResponse)
def device_authorize(
    body: DeviceAuthorizeRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    service: DeviceAuthorizationService = Depends(get_service),
):
    """
    Second screen: user logged in with the IdP and entered the user_code.
    Verifies access_token, then hands the token bundle to the waiting device.
    """
    _rate_limit(request, "device_authorize", RATE_LIMIT_AUTHORIZE_PER_MINUTE)
    tokens = TokenBundle(
        access_token=body.access_token or "",
        id_token=body.id_token or "",
        refresh_token=body.refresh_token or "",
    )
    try:
        record = service.authorize(body.user_code, body.access_token, tokens)
    except DeviceFlowError as e:
        _audit_failure(db, request, e)
        raise oauth_error_from(e) from e

    log_audit(
        db,
        EVENT_DEVICE_AUTHORIZED,
        client_id=record.client_id,
        subject_id=record.subject_id,
        ip=get_client_ip(request),
    )
    _no_store(response)
    return DeviceActionResponse(success=True, message="Device authorized successfully")


@router.post("/device/deny", response_model=DeviceActionResponse)
def device_deny(
    body: DeviceDenyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    service: DeviceAuthorizationService = Depends(get_service),
):
    """Second screen: user rejected the device. The device's next poll gets access_denied."""
    _rate_limit(request, "device_authorize", RATE_LIMIT_AUTHORIZE_PER_MINUTE)
    try:
        record, subject_id = service.deny(body.user_code, body.access_token)
    except DeviceFlowError as e:
        _audit_failure(db, request, e)
        raise oauth_error_from(e) from e

    log_audit(
        db,
        EVENT_DEVICE_DENIED,
        client_id=record.client_id,
        subject_id=subject_id,
        ip=get_client_ip(request),
    )
    _no_store(response)
    return DeviceActionResponse(success=True, message="Device authorization denied")
