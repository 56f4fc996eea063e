import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.handoff.api.v1.routes_handoff import router as handoff_router_v1
from src.handoff.api.v1.routes_system import router as system_router_v1
from src.handoff.config import settings
from src.handoff.infra.db.bootstrap import init_sql_store
from src.handoff.services.janitor.service import janitor
from src.handoff.services.privacy.timers import live_registry

logging.basicConfig(level=settings.log_level.upper())

app = FastAPI(title="Shift Handoff Core API")


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    When HANDOFF_STORE_BACKEND=sql and a DATABASE_URL is configured, the vault
    and audit log move to a SQL-backed key-value store. Otherwise the
    in-memory store stays active. The janitor starts sweeping either way.
    """

    init_sql_store()
    janitor.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await janitor.stop()
    live_registry.close_all()


# CORS configuration – permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(handoff_router_v1, prefix="/api/v1")
