# main.py — Task Board API
# - Request correlation IDs
# - Security headers
# - Sanitised validation errors, opaque 500s
# - Health check with DB verification

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database import engine, init_db, close_db, get_db_context
from models import utcnow
from telemetry import setup_telemetry, SERVICE_VERSION

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("taskboard")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def _check_startup_config():
    """Log what is missing from the environment; nothing here is fatal."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or shorter than 32 characters; tokens will not survive a restart")

    if os.getenv("EMAIL_API_URL"):
        logger.info("✉️  Email delivery configured")
    else:
        warnings.append("⚠️  EMAIL_API_URL not set; temporary passwords will be returned in API responses")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Task Board API v{SERVICE_VERSION}...")
    await init_db()
    _check_startup_config()
    setup_telemetry(app, engine)
    yield
    logger.info("🛑 Shutting down Task Board API...")
    await close_db()


app = FastAPI(
    title="Task Board API",
    description="Multi-tenant task management for schools and departments",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    # Probes would drown out real traffic at INFO
    log = logger.debug if request.url.path == "/health" else logger.info
    log(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none';"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

SENSITIVE_FIELDS = {"password", "current_password", "new_password"}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """422 with JSON-safe details; submitted passwords are never echoed back"""
    errors = []
    for err in exc.errors():
        loc = list(err.get("loc", []))
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": loc,
            "msg": str(err.get("msg", "")),
        }
        if "input" in err and not SENSITIVE_FIELDS.intersection(map(str, loc)):
            value = err["input"]
            if isinstance(value, dict):
                value = {k: v for k, v in value.items() if k not in SENSITIVE_FIELDS}
            try:
                json.dumps(value)
                clean_err["input"] = value
            except (TypeError, ValueError):
                clean_err["input"] = str(value)
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, users, organisations, tasks, reports

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(organisations.router)
app.include_router(tasks.router)
app.include_router(reports.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        db_status = "connected"
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_status = "unavailable"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "timestamp": utcnow().isoformat(),
        "database": db_status,
        "version": SERVICE_VERSION,
        "environment": ENVIRONMENT,
    }


@app.get("/")
async def root():
    return {
        "name": "Task Board API",
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=ENVIRONMENT != "production",
    )
