"""
Device Authorization Server (RFC 8628 device code flow).
Devices get codes at /device/code and poll /device/token; the second screen calls /device/authorize.
Port 9100 by default.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from device_server.audit import router as audit_router
from device_server.config import STORE_BACKEND
from device_server.database import SessionLocal, init_db
from device_server.device_endpoints import router as device_router
from device_server.errors import NO_STORE_HEADERS, OAuthError, error_body, oauth_error_handler
from device_server.seed import seed_from_env
from device_server.store import MemoryDeviceCodeStore, SqlDeviceCodeStore
from device_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed clients, and set up the device code store on startup."""
    init_db()
    db = SessionLocal()
    try:
        seed_from_env(db)
        if STORE_BACKEND == "memory":
            app.state.device_store = MemoryDeviceCodeStore()
        else:
            SqlDeviceCodeStore(db).purge_expired()
    finally:
        db.close()
    logger.info("Device server started (store=%s)", STORE_BACKEND)
    yield


app = FastAPI(title="Device Authorization Server", version="0.1.0", lifespan=lifespan)
app.include_router(device_router, tags=["device"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(audit_router)
app.add_exception_handler(OAuthError, oauth_error_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed or non-JSON body -> 400 invalid_request instead of FastAPI's 422."""
    return JSONResponse(
        status_code=400,
        content=error_body("invalid_request", "Invalid JSON in request body"),
        headers=NO_STORE_HEADERS,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("server_error", "Internal server error"),
        headers=NO_STORE_HEADERS,
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "device_server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "device_server.main:app",
        host="127.0.0.1",
        port=9100,
        reload=True,
    )
