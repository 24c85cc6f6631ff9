"""FastAPI application entrypoint.

Configures CORS, includes routers, wires rate limiters and the sync
supervisor, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from . import state
from .routers import dashboard as dashboard_router
from .routers import integrations as integrations_router
from .routers import reports as reports_router
from .routers import webhooks as webhooks_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

# Background syncs get this long to finish before shutdown abandons them
SYNC_DRAIN_TIMEOUT_SECONDS = 10.0


def create_app() -> FastAPI:
    app = FastAPI(
        title="StorePulse API",
        description="""
        StorePulse turns Shopify and Stripe activity into business metrics.

        This API provides endpoints for:
        - Webhook intake (signature verified, exactly-once)
        - Integration management and historical backfills
        - Period-over-period metric aggregation and dashboard cards
        - Performance reports and insights
        """,
        version="1.0.0",
        license_info={
            "name": "Proprietary",
        },
        servers=[
            {
                "url": "http://localhost:8000",
                "description": "Development server"
            },
        ]
    )

    # Trust X-Forwarded-For / X-Forwarded-Proto from the load balancer
    # so rate limiting keys on the real client IP
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(dashboard_router.router)
    app.include_router(reports_router.router)
    app.include_router(integrations_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        status = init_observability()
        logger.info(f"[STARTUP] Observability: {status}")

        state.configure_limiters(state.build_counter_store(settings), settings)
        logger.info(f"[STARTUP] Rate limiters ready ({settings.RATE_LIMIT_BACKEND}), sync backend {settings.SYNC_BACKEND}")

    @app.on_event("shutdown")
    async def shutdown_event():
        running = state.sync_supervisor.running()
        if running:
            logger.info(f"[SHUTDOWN] Waiting for {len(running)} background sync(s)")
        if not await state.sync_supervisor.wait_idle(timeout=SYNC_DRAIN_TIMEOUT_SECONDS):
            logger.warning(f"[SHUTDOWN] Abandoning syncs still running: {state.sync_supervisor.running()}")

        if settings.SYNC_BACKEND == "arq":
            from .workers.arq_enqueue import reset_arq_pool

            await reset_arq_pool()

    return app


app = create_app()
