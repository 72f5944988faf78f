import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg import errors as pg_errors

from .config import settings
from .db import close_pools, get_admin_conn
from .logs import json_log
from .membership_billing import TransitionError
from .routers.checkout import router as checkout_router
from .routers.memberships import ActionError, router as memberships_router
from .settlement import SettlementError

SERVICE_NAME = "pos-billing-backend"
STARTED_AT_UTC = datetime.now(timezone.utc)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_check_failed", env=settings.env, error=err)
    yield
    close_pools()


app = FastAPI(title="POS Checkout & Membership Billing API", version=settings.api_version, lifespan=lifespan)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


# Constraint and cast errors are the client's fault; don't surface them as 500s.
_DB_ERRORS = (
    (pg_errors.InvalidTextRepresentation, 400, "invalid value"),
    (pg_errors.ForeignKeyViolation, 400, "invalid reference"),
    (pg_errors.CheckViolation, 400, "constraint violation"),
    (pg_errors.UniqueViolation, 409, "conflict"),
)


def _db_error_handler(status_code: int, detail: str):
    def handler(_req: Request, exc: Exception):
        content = {"detail": detail}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=status_code, content=content)

    return handler


for _exc_cls, _status, _detail in _DB_ERRORS:
    app.add_exception_handler(_exc_cls, _db_error_handler(_status, _detail))


@app.exception_handler(ActionError)
def _action_error(_req: Request, exc: ActionError):
    return JSONResponse(status_code=exc.status_code, content=exc.body())


@app.exception_handler(TransitionError)
def _transition_error(_req: Request, exc: TransitionError):
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(SettlementError)
def _settlement_error(_req: Request, exc: SettlementError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(checkout_router)
app.include_router(memberships_router)


def _db_health():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


def _health_response(req: Request, ready_status: str):
    ok, err = _db_health()
    content = {
        "status": ready_status if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }
    if ok:
        return content
    if settings.env in {"local", "dev"}:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health")
def health(req: Request):
    return _health_response(req, "ok")


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    return _health_response(req, "ready")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "checkout_tax_mode": settings.checkout_tax_mode,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
