"""
Device side of the flow: request codes, show them, poll until the user acts (RFC 8628 §3.4-3.5).
Fixed-interval loop; authorization_pending keeps polling, slow_down adds 5 seconds,
anything terminal raises.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from device_client.config import CLIENT_ID, CLIENT_SECRET, DEFAULT_SCOPE, DEVICE_SERVER_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_STEP = 5


class DeviceFlowError(Exception):
    """Error response from the device server. `error` is the RFC 6749/8628 code."""

    retryable = False

    def __init__(self, error: str, description: str | None = None):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description


class AuthorizationPending(DeviceFlowError):
    retryable = True


class SlowDown(DeviceFlowError):
    retryable = True


class ServerError(DeviceFlowError):
    retryable = True


class AccessDenied(DeviceFlowError):
    pass


class ExpiredToken(DeviceFlowError):
    pass


class InvalidGrant(DeviceFlowError):
    pass


_ERRORS: dict[str, type[DeviceFlowError]] = {
    "authorization_pending": AuthorizationPending,
    "slow_down": SlowDown,
    "server_error": ServerError,
    "access_denied": AccessDenied,
    "expired_token": ExpiredToken,
    "invalid_grant": InvalidGrant,
}


@dataclass
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    verification_uri_complete: str | None = None


@dataclass
class DeviceTokens:
    access_token: str
    id_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        return f"DeviceTokens(token_type={self.token_type!r}, expires_in={self.expires_in})"


def _raise_for_error(response: httpx.Response) -> None:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    error = data.get("error") or ("server_error" if response.status_code >= 500 else "invalid_request")
    raise _ERRORS.get(error, DeviceFlowError)(error, data.get("error_description"))


class DeviceFlowClient:
    def __init__(
        self,
        base_url: str = DEVICE_SERVER_URL,
        client_id: str = CLIENT_ID,
        *,
        client_secret: str | None = CLIENT_SECRET,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = http or httpx.Client(timeout=HTTP_TIMEOUT)
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def request_code(self, scope: str | None = DEFAULT_SCOPE) -> DeviceAuthorization:
        """POST /device/code. Raises DeviceFlowError on an error response."""
        payload = {"client_id": self.client_id}
        if scope:
            payload["scope"] = scope
        try:
            r = self._http.post(f"{self.base_url}/device/code", json=payload)
        except httpx.TransportError as e:
            raise ServerError("server_error", str(e)) from e
        if r.status_code != 200:
            _raise_for_error(r)
        data = r.json()
        return DeviceAuthorization(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data["verification_uri"],
            verification_uri_complete=data.get("verification_uri_complete"),
            expires_in=int(data["expires_in"]),
            interval=int(data.get("interval") or 5),
        )

    def poll_once(self, device_code: str) -> DeviceTokens:
        """One POST /device/token. Returns tokens or raises (AuthorizationPending while waiting)."""
        payload = {
            "grant_type": DEVICE_GRANT_TYPE,
            "device_code": device_code,
            "client_id": self.client_id,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        try:
            r = self._http.post(f"{self.base_url}/device/token", json=payload)
        except httpx.TransportError as e:
            raise ServerError("server_error", str(e)) from e
        if r.status_code != 200:
            _raise_for_error(r)
        data = r.json()
        return DeviceTokens(
            access_token=data["access_token"],
            id_token=data["id_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(data.get("expires_in") or 0),
            token_type=data.get("token_type", "Bearer"),
        )

    def wait_for_tokens(self, authorization: DeviceAuthorization) -> DeviceTokens:
        """
        Poll every `interval` seconds until tokens arrive, the user denies, or the code expires.
        Server errors and network failures are retried on the same schedule.
        """
        interval = max(1, authorization.interval)
        deadline = self._clock() + authorization.expires_in
        while True:
            if self._clock() >= deadline:
                raise ExpiredToken("expired_token", "Device code expired before authorization")
            self._sleep(interval)
            try:
                return self.poll_once(authorization.device_code)
            except AuthorizationPending:
                continue
            except SlowDown:
                interval += SLOW_DOWN_STEP
                logger.info("Server asked to slow down; polling every %ss", interval)
            except ServerError as e:
                logger.warning("Poll failed, retrying: %s", e)
