"""
Ads Audit Decisions — FastAPI Backend
Versioned decision log, change sets and Google Ads Editor export bundles.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from adaudit.config import get_settings
from adaudit.database import init_db, check_db_connection
from adaudit.auth import require_auth
from adaudit.errors import DecisionEngineError
from adaudit.routers import decisions, change_sets

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

SERVICE_NAME = "Ads Audit Decisions"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME}...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=SERVICE_NAME,
    description="Decision versioning, change sets and bulk-edit export for Google Ads audits",
    version="1.0.0",
    lifespan=lifespan,
)

CORS_ORIGINS = settings.cors_origin_list


class AddCORSHeadersMiddleware(BaseHTTPMiddleware):
    """Ensure CORS headers on ALL responses (including errors). Runs before CORSMiddleware."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS":
            origin = request.headers.get("origin", "")
            if origin in CORS_ORIGINS or not origin:
                return Response(
                    status_code=200,
                    headers={
                        "Access-Control-Allow-Origin": origin or CORS_ORIGINS[0],
                        "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
                        "Access-Control-Allow-Headers": "Content-Type, Authorization",
                        "Access-Control-Allow-Credentials": "true",
                        "Access-Control-Expose-Headers": "Content-Disposition, X-Export-Hash",
                        "Access-Control-Max-Age": "86400",
                    },
                )
        response = await call_next(request)
        origin = request.headers.get("origin", "")
        if origin in CORS_ORIGINS:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
        return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Export-Hash"],
)
app.add_middleware(AddCORSHeadersMiddleware)


@app.exception_handler(DecisionEngineError)
async def decision_engine_error_handler(request: Request, exc: DecisionEngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(decisions.router, prefix="/api/decisions", tags=["Decisions"], dependencies=_auth)
app.include_router(change_sets.router, prefix="/api/export", tags=["Change Sets & Export"], dependencies=_auth)


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": SERVICE_NAME,
        "database": "connected" if db_ok else "disconnected",
    }
