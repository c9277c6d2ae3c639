from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .config import settings
from .db import get_admin_conn, close_pools
from .logs import json_log
from .routers.sync import router as sync_router
from .sync_errors import InvalidTransition, SyncValidationError

SERVICE_NAME = "pos-sync-backend"
QUIET_PATHS = {"/health", "/health/live"}

app = FastAPI(title="POS Sync API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_response(status_code: int, content: dict, exc: Exception) -> JSONResponse:
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


# Constraint and cast errors that escape a handler are the caller's fault, not a 500.
PG_ERROR_STATUS = {
    pg_errors.InvalidTextRepresentation: (400, "invalid value"),
    pg_errors.ForeignKeyViolation: (400, "invalid reference"),
    pg_errors.CheckViolation: (400, "constraint violation"),
    pg_errors.UniqueViolation: (409, "conflict"),
}


def _pg_error_handler(status_code: int, detail: str):
    def _handler(_req: Request, exc: Exception):
        return _error_response(status_code, {"detail": detail}, exc)

    return _handler


for _exc_type, (_status, _detail) in PG_ERROR_STATUS.items():
    app.add_exception_handler(_exc_type, _pg_error_handler(_status, _detail))


@app.exception_handler(SyncValidationError)
def _sync_validation_error(_req: Request, exc: SyncValidationError):
    return JSONResponse(status_code=400, content={"detail": {"errors": exc.errors}})


@app.exception_handler(InvalidTransition)
def _invalid_transition(_req: Request, exc: InvalidTransition):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "item_id": exc.item_id, "status": exc.current},
    )


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"}:
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    return _error_response(500, {"detail": "internal error", "request_id": rid}, exc)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": (request.client.host if request.client else None),
        # Registers identify themselves on every write; handy when tracing one till's replays.
        "device_id": request.headers.get("X-Device-Id"),
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.time() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if request.url.path not in QUIET_PATHS:
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
            **fields,
        )
    return response


# The back-office UI runs on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sync_router)


@app.on_event("startup")
def _startup():
    try:
        _queue_backlog()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_unavailable", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _queue_backlog() -> dict:
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COUNT(*) FILTER (WHERE status = 'pending')::int AS pending,
                  COUNT(*) FILTER (WHERE status = 'conflict')::int AS conflicts,
                  COUNT(*) FILTER (WHERE status = 'failed')::int AS failed
                FROM sync_queue
                """
            )
            return dict(cur.fetchone() or {})


@app.get("/health")
def health(req: Request):
    """DB reachability plus the queue backlog, so a stuck worker shows up without log access."""
    content = {
        "status": "ok",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    try:
        content["sync_queue"] = _queue_backlog()
    except Exception as exc:
        content.update({"status": "degraded", "db": "down"})
        return _error_response(503, content, exc)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }
