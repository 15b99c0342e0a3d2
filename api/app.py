"""
FastAPI application factory for RGAP.

Usage:
    python main.py                        # Dev server on port 8000
    APP_DB_PATH=/data/rgap.sqlite python -m api.app

OpenAPI docs available at http://localhost:8000/docs after starting.

Cross-cutting behaviour lives here:
    - logging setup (plain text, or JSON lines when APP_LOG_FORMAT=json)
    - per-IP sliding-window rate limits with 429 + Retry-After
    - request id, request logging and slow-request warnings
    - security and Cache-Control headers
    - 400 envelope for validation errors, opaque 500 for everything else
"""

import json
import logging
import os
import sqlite3
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from api.auth import client_ip as resolve_client_ip
from api.database import get_db_path, set_db_path
from api.routes import analytics, auth, bookmarks, entities, grants, history, reference
from api.routes import frontend as frontend_routes
from utils.config import AppConfig, get_org_title, get_recipient_type_label
from utils.database import get_query_stats, get_slow_queries
from utils.formatting import (
    format_amount,
    format_count,
    format_currency,
    format_date,
    format_date_diff,
    truncate_text,
)

# ── Configuration ─────────────────────────────────────────────────────────────
_cfg = AppConfig.from_env()

# ── Logging ───────────────────────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as newline-delimited JSON."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("method", "path", "status", "duration_ms", "client_ip",
                    "request_id"):
            if hasattr(record, key):
                data[key] = getattr(record, key)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data)


_logger = logging.getLogger("rgap_api")
_handler = logging.StreamHandler()
if _cfg.log_format == "json":
    _handler.setFormatter(_JsonFormatter())
else:
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
logging.basicConfig(handlers=[_handler], level=logging.INFO, force=True)

# ── Rate limiting ─────────────────────────────────────────────────────────────
# Path prefix -> (bucket, requests per minute). First match wins.
_RATE_LIMITS: list[tuple[str, str, int]] = [
    ("/api/grants", "search", _cfg.rate_limit_search),
    ("/api/auth/login", "auth", _cfg.rate_limit_auth),
    ("/api/auth/register", "auth", _cfg.rate_limit_auth),
    ("/api/auth/forgot-password", "auth", _cfg.rate_limit_auth),
    ("/api/auth/reset-password", "auth", _cfg.rate_limit_auth),
]
_DEFAULT_RATE_LIMIT = _cfg.rate_limit_default
_rate_counters: dict[str, dict[str, list]] = defaultdict(lambda: defaultdict(list))
_MAX_TRACKED_IPS = 10_000
_last_cleanup: float = 0.0
_CLEANUP_INTERVAL = 300.0

_SLOW_REQUEST_MS = 500.0

# Paths whose responses depend on the session user
_PRIVATE_PREFIXES = ("/api/auth", "/api/bookmarks", "/api/history", "/api/grants",
                     "/api/recipients", "/api/institutes")


def _rate_bucket(path: str) -> tuple[str, int]:
    for prefix, bucket, limit in _RATE_LIMITS:
        if path.startswith(prefix):
            return bucket, limit
    return path, _DEFAULT_RATE_LIMIT


def _cleanup_rate_counters() -> None:
    """Drop stale counter entries so memory stays bounded."""
    global _last_cleanup
    now = time.time()
    if now - _last_cleanup < _CLEANUP_INTERVAL:
        return
    _last_cleanup = now
    window_start = now - 60.0
    for ip in list(_rate_counters):
        buckets = _rate_counters[ip]
        for bucket in list(buckets):
            buckets[bucket] = [t for t in buckets[bucket] if t > window_start]
            if not buckets[bucket]:
                del buckets[bucket]
        if not buckets:
            del _rate_counters[ip]
    if len(_rate_counters) > _MAX_TRACKED_IPS:
        excess = len(_rate_counters) - _MAX_TRACKED_IPS
        quietest = sorted(
            _rate_counters,
            key=lambda ip: sum(len(v) for v in _rate_counters[ip].values()),
        )[:excess]
        for ip in quietest:
            del _rate_counters[ip]


# ── Application metrics ───────────────────────────────────────────────────────
_app_start_time: float = time.time()
_metrics: dict = {
    "request_count": 0,
    "error_count": 0,
    "blocked_count": 0,
    "response_times_ms": [],
}
_RESPONSE_TIME_WINDOW = 100


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_path = get_db_path()
    if not db_path.exists():
        _logger.warning(
            "Database not found at %s. Run 'python build_grants_db.py' first.", db_path
        )
    yield


def _grant_count(db_path: Path) -> int:
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute("SELECT COUNT(*) FROM grants").fetchone()[0]
    finally:
        conn.close()


def create_app(db_path: Path | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Override the database path (useful for testing).

    Returns:
        Configured FastAPI application instance.
    """
    if db_path is not None:
        set_db_path(db_path)
    reference.clear_reference_cache()
    analytics.analytics_cache.clear()

    app = FastAPI(
        title="RGAP API",
        summary="Search, bookmark and chart Canadian federal research grants.",
        description=(
            "## Research Grant Analytics Platform\n\n"
            "Grant agreements from NSERC, CIHR and SSHRC joined with their "
            "recipients and host institutes.\n\n"
            "### Key concepts\n"
            "- **Amounts** are agreement values in Canadian dollars.\n"
            "- **Amendments**: each grant lists every version of its agreement, "
            "newest first.\n"
            "- **Bookmarks** and **search history** need a signed-in session "
            "(httponly cookie set by `/api/auth/login`).\n\n"
            "### Rate limits\n"
            f"- `/api/grants`: {_cfg.rate_limit_search} req/min per IP\n"
            f"- sign-in and password endpoints: {_cfg.rate_limit_auth} req/min per IP\n"
            f"- All other endpoints: {_cfg.rate_limit_default} req/min per IP\n\n"
            "Returns `429 Too Many Requests` with `Retry-After: 60` when exceeded."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "grants", "description": "Parametric and quick grant search."},
            {"name": "entities", "description": "Recipient and institute profiles."},
            {"name": "bookmarks", "description": "Per-user bookmarks and notes."},
            {"name": "history", "description": "Search history and popular searches."},
            {"name": "analytics", "description": "Yearly series for charts."},
            {"name": "reference", "description": "Filter options and agencies."},
            {"name": "auth", "description": "Accounts, sessions and passwords."},
            {"name": "meta", "description": "Health check and query timing."},
        ],
    )

    # ── CORS ──────────────────────────────────────────────────────────────────
    wildcard = _cfg.cors_origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cfg.cors_origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # ── Cache-Control ─────────────────────────────────────────────────────────

    @app.middleware("http")
    async def cache_control_middleware(request: Request, call_next):
        response = await call_next(request)
        path = request.url.path
        if path.startswith("/api/reference"):
            response.headers.setdefault("Cache-Control", "public, max-age=3600")
        elif path.startswith(_PRIVATE_PREFIXES):
            response.headers["Cache-Control"] = "private, no-cache"
        return response

    # ── Request logging + rate limiting ───────────────────────────────────────

    @app.middleware("http")
    async def log_and_rate_limit(request: Request, call_next):
        request_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        client_ip = resolve_client_ip(request) or "unknown"
        path = request.url.path

        _cleanup_rate_counters()

        if path.startswith("/health"):
            return await call_next(request)

        bucket, limit = _rate_bucket(path)
        now = time.time()
        window_start = now - 60.0
        hits = [t for t in _rate_counters[client_ip][bucket] if t > window_start]
        _rate_counters[client_ip][bucket] = hits
        if len(hits) >= limit:
            _metrics["blocked_count"] += 1
            _logger.warning(
                "rate_limited ip=%s path=%s limit=%d", client_ip, path, limit
            )
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "status_code": 429},
                headers={"Retry-After": "60"},
            )
        hits.append(now)

        _metrics["request_count"] += 1
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000

        _metrics["response_times_ms"].append(duration_ms)
        if len(_metrics["response_times_ms"]) > _RESPONSE_TIME_WINDOW:
            _metrics["response_times_ms"] = (
                _metrics["response_times_ms"][-_RESPONSE_TIME_WINDOW:]
            )
        if response.status_code >= 500:
            _metrics["error_count"] += 1

        response.headers["X-Request-ID"] = request_id

        if _cfg.log_format == "json":
            _logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "client_ip": client_ip,
                    "request_id": request_id,
                },
            )
        else:
            _logger.info(
                "method=%s path=%s status=%d duration_ms=%.1f ip=%s rid=%s",
                request.method, path, response.status_code, duration_ms,
                client_ip, request_id,
            )
        if duration_ms > _SLOW_REQUEST_MS:
            _logger.warning(
                "slow_request method=%s path=%s duration_ms=%.1f",
                request.method, path, duration_ms,
            )
        return response

    # ── Security headers ──────────────────────────────────────────────────────

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' cdn.jsdelivr.net 'unsafe-inline'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data:; "
            "font-src 'self'; "
            "connect-src 'self';"
        )
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    # ── Error handling ────────────────────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request",
                "details": jsonable_encoder(exc.errors()),
                "status_code": 400,
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"error": "Bad request", "detail": str(exc), "status_code": 400},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        _logger.error(
            "unhandled_error method=%s path=%s", request.method, request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "status_code": 500},
        )

    # ── Health check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["meta"], summary="Health check")
    def health():
        """200 when the database is reachable, with the number of grants."""
        db_path = get_db_path()
        if not db_path.exists():
            return JSONResponse(
                status_code=503,
                content={"status": "no_database", "database": str(db_path)},
            )
        try:
            count = _grant_count(db_path)
        except sqlite3.Error as exc:
            _logger.warning("health check failed: %s", exc)
            return JSONResponse(
                status_code=503, content={"status": "degraded"},
            )
        return {"status": "ok", "database": str(db_path), "grants": count}

    @app.get("/health/detailed", tags=["meta"], summary="Detailed health metrics")
    def health_detailed():
        """Uptime, request counters and query timing. Counters reset on restart."""
        db_path = get_db_path()
        if not db_path.exists():
            return JSONResponse(
                status_code=503,
                content={"status": "no_database", "database": str(db_path)},
            )
        try:
            count = _grant_count(db_path)
        except sqlite3.Error as exc:
            _logger.warning("health check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "degraded"})

        rts = _metrics["response_times_ms"]
        qstats = get_query_stats()
        return {
            "status": "ok",
            "uptime_seconds": round(time.time() - _app_start_time, 2),
            "request_count": _metrics["request_count"],
            "error_count": _metrics["error_count"],
            "db_size_bytes": os.path.getsize(str(db_path)),
            "grants_count": count,
            "avg_response_time_ms": round(sum(rts) / len(rts), 2) if rts else 0.0,
            "rate_limiter_stats": {
                "tracked_ips": len(_rate_counters),
                "blocked_requests": _metrics["blocked_count"],
            },
            "slow_query_count": qstats["slow_query_count"],
            "avg_query_time_ms": qstats["avg_query_time_ms"],
        }

    @app.get("/api/health/queries", tags=["meta"], summary="Slow query log")
    def health_queries():
        """The most recent statements that took longer than 100 ms."""
        return {
            "stats": get_query_stats(),
            "slow_queries": get_slow_queries(),
        }

    # ── Routers ───────────────────────────────────────────────────────────────

    prefix = "/api"
    app.include_router(grants.router,     prefix=prefix)
    app.include_router(entities.router,   prefix=prefix)
    app.include_router(bookmarks.router,  prefix=prefix)
    app.include_router(history.router,    prefix=prefix)
    app.include_router(analytics.router,  prefix=prefix)
    app.include_router(reference.router,  prefix=prefix)
    app.include_router(auth.router,       prefix=prefix)

    # ── Static files + Jinja2 templates ───────────────────────────────────────
    _here = Path(__file__).parent.parent

    static_dir = _here / "static"
    templates_dir = _here / "templates"

    if static_dir.exists():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    if templates_dir.exists():
        templates = Jinja2Templates(directory=str(templates_dir))
        templates.env.filters["currency"] = format_currency
        templates.env.filters["amount"] = format_amount
        templates.env.filters["number"] = format_count
        templates.env.filters["date"] = format_date
        templates.env.filters["duration"] = format_date_diff
        templates.env.filters["truncate_text"] = truncate_text
        templates.env.filters["org_title"] = get_org_title
        templates.env.filters["recipient_type"] = get_recipient_type_label

        frontend_routes.set_templates(templates)
        app.include_router(frontend_routes.router)
        frontend_routes.register_error_handlers(app)

    return app


# Singleton instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.app:app",
        host=_cfg.api_host,
        port=_cfg.api_port,
        reload=True,
        log_level="info",
    )
