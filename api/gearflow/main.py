# gearflow/main.py
# Gearflow API - booking & allocation engine for loanable equipment
from __future__ import annotations
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from gearflow.settings import settings
from gearflow.database import init_db, close_db, check_db_health, create_schema
from gearflow.errors import EngineError, is_concurrency_conflict

from gearflow.routers.availability import router as availability_router
from gearflow.routers.reservations import router as reservations_router
from gearflow.routers.checkouts import router as checkouts_router
from gearflow.routers.assets import router as assets_router
from gearflow.routers.bulk_skus import router as bulk_skus_router
from gearflow.routers.integrity import router as integrity_router

VERSION = "1.0.0"

# ---------------------------------------------------------
# Logging setup
# ---------------------------------------------------------
from gearflow.logging_setup import setup_logging
setup_logging(settings)
log = logging.getLogger("gearflow")

# ---------------------------------------------------------
# Lifespan: Database init/cleanup
# ---------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    if settings.CREATE_SCHEMA_ON_STARTUP:
        await create_schema()
    log.info("Gearflow API %s started", VERSION)
    yield
    await close_db()
    log.info("Gearflow API stopped")

# ---------------------------------------------------------
# FastAPI app + CORS
# ---------------------------------------------------------
app = FastAPI(
    title="Gearflow API",
    version=VERSION,
    description="Reservations, checkouts and scan-verified equipment loans",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(availability_router)
app.include_router(reservations_router)
app.include_router(checkouts_router)
app.include_router(assets_router)
app.include_router(bulk_skus_router)
app.include_router(integrity_router)

# ---------------------------------------------------------
# Error handling: every failure renders as {error, data?}
# ---------------------------------------------------------
@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    issues = [
        {"path": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "data": {"issues": jsonable_encoder(issues)}})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    """
    Map DB integrity errors that escaped a service to 4xx instead of 500.
    - Unique / exclusion violation -> 409 Conflict
    - Anything else (FK, check, not-null) -> 400
    """
    log.info("integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    if is_concurrency_conflict(exc):
        return JSONResponse(status_code=409, content={"error": "Conflict with existing data"})
    return JSONResponse(status_code=400, content={"error": "Integrity error"})


@app.exception_handler(DBAPIError)
async def dbapi_error_handler(request: Request, exc: DBAPIError):
    if is_concurrency_conflict(exc):
        return JSONResponse(status_code=409, content={"error": "Concurrent update conflict, retry the request"})
    log.exception("database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# ---------------------------------------------------------
# Endpoints
# ---------------------------------------------------------
@app.get("/health")
async def health():
    """Health check endpoint with database status."""
    result = {"status": "ok", "version": VERSION}
    db_health = await check_db_health()
    result["database"] = db_health
    if db_health.get("status") != "healthy":
        result["status"] = "degraded"
    return result
