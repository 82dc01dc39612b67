# main.py — Agentboard API server
# Features:
# - REST API under /api (agents, projects, tickets, audit)
# - GraphQL + subscriptions at /graphql
# - MCP (Streamable HTTP) at /mcp/ for LLM agents
# - Request correlation IDs, security headers, request audit trail
# - Health check with DB verification

import os
import uuid
import json
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from board_service import BoardService
from database import init_db, close_db, get_db_session, get_db_context, async_session_maker, DATABASE_URL
from errors import BoardError, ValidationError
from events import EventBus
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("agentboard")
audit_logger = logging.getLogger("agentboard.audit")

VERSION = "1.0.0"
MCP_SESSION_RETENTION_DAYS = int(os.getenv("MCP_SESSION_RETENTION_DAYS", "30"))
MCP_SESSION_IDLE_MINUTES = int(os.getenv("MCP_SESSION_IDLE_MINUTES", "60"))
MAX_AUDITED_BODY = 4000


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []
    production = os.getenv("ENVIRONMENT", "development") == "production"

    admin_key = os.getenv("ADMIN_API_KEY", "")
    if admin_key and len(admin_key) < 16:
        warnings.append("⚠️  ADMIN_API_KEY is shorter than 16 characters — use a long random value")

    if production and DATABASE_URL.startswith("sqlite"):
        warnings.append("⚠️  Running in production on SQLite — set DATABASE_URL for a managed database")

    if "*" in os.getenv("CORS_ORIGINS", ""):
        warnings.append("⚠️  CORS_ORIGINS contains '*' — any site can call the API with credentials")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


async def _bootstrap_store(app: FastAPI):
    """Admin key, MCP session pruning. Runs once per process start."""
    async with get_db_context(app.state.session_factory) as db:
        service = BoardService(db, app.state.event_bus, app.state.write_lock)
        override = os.getenv("ADMIN_API_KEY")
        if override:
            await service.override_admin_key(override)
            logger.info("🔑 Admin API key set from ADMIN_API_KEY")
        else:
            key = await service.get_or_create_admin_key()
            if os.getenv("ENVIRONMENT", "development") != "production":
                logger.info(f"🔑 Admin API key: {key}")
        await service.prune_mcp_sessions(MCP_SESSION_RETENTION_DAYS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Agentboard v{VERSION}...")
    await init_db()
    app.state.session_factory = async_session_maker
    app.state.event_bus = EventBus()
    app.state.write_lock = asyncio.Lock()
    await _bootstrap_store(app)
    _check_startup_config()
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    async with mcp_server.session_manager.run():
        yield
    logger.info("🛑 Shutting down Agentboard...")
    app.state.event_bus.close()
    await close_db()


app = FastAPI(
    title="Agentboard",
    description="Kanban board for humans and LLM agents — REST, GraphQL and MCP over one store",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type", "X-Request-ID", "X-Correlation-ID",
        "X-Api-Key", "X-Admin-Key", "Mcp-Session-Id",
    ],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Mcp-Session-Id"],
)


# ============================================================
# MIDDLEWARE: Request audit trail
# ============================================================

@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    if not request.url.path.startswith("/api"):
        return await call_next(request)

    body = None
    if request.method not in ("GET", "HEAD", "OPTIONS"):
        raw = await request.body()
        if raw:
            body = raw.decode("utf-8", errors="replace")[:MAX_AUDITED_BODY]

    response = await call_next(request)

    agent_id = getattr(request.state, "agent_id", None)
    try:
        async with request.app.state.session_factory() as db:
            service = BoardService(db, request.app.state.event_bus, request.app.state.write_lock)
            await service.record_request(agent_id, request.method, request.url.path, response.status_code, body)
    except Exception:
        audit_logger.exception(f"Failed to audit {request.method} {request.url.path}")
    return response


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

    # Log request
    logger.info(
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
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(BoardError)
async def board_error_handler(request: Request, exc: BoardError):
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "detail": exc.message,
            "code": exc.code,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def _describe_validation_error(errors: list) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first["loc"] if part not in ("body", "query", "path"))
    return f"{location}: {first['msg']}" if location else first["msg"]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    # Malformed or missing input is reported like any other validation failure
    error = ValidationError(_describe_validation_error(errors))
    return JSONResponse(
        status_code=error.http_status,
        content={
            "detail": error.message,
            "code": error.code,
            "errors": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
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

from routers import agents, projects, tickets, audit, graphql_router
from routers.mcp_tools import create_mcp_server
from routers.mcp_transport import McpSessionGuard

app.include_router(agents.router)
app.include_router(projects.router)
app.include_router(tickets.router)
app.include_router(audit.router)
app.include_router(graphql_router.router, prefix="/graphql", tags=["GraphQL"])

# MCP tools read session factory / bus / lock from app.state at call time
mcp_server = create_mcp_server(app.state)
app.mount("/mcp", McpSessionGuard(
    mcp_server.streamable_http_app(), app.state, idle_timeout=MCP_SESSION_IDLE_MINUTES * 60,
))


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            from sqlalchemy import text
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "services": {
            "rest": "operational",
            "graphql": "operational",
            "mcp": "operational",
        },
    }


@app.get("/")
async def root():
    return {
        "name": "Agentboard",
        "version": VERSION,
        "description": "Kanban board for humans and LLM agents",
        "docs": "/docs",
        "graphql": "/graphql",
        "mcp": "/mcp/",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
