import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import metrics
from .config import Settings, get_settings
from .pipeline import (
    VideoRequestService,
    actor_router,
    admin_router,
    synclabs_router,
    video_router,
    whatsapp_router,
)
from .provider_factory import build_service

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[VideoRequestService] = None,
) -> FastAPI:
    """Build the app. Tests pass a prebuilt service; production builds one from env."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Personaliz starting up ({settings.environment})...")
        metrics.set_gauge("start_time", time.time())
        if getattr(app.state, "service", None) is None:
            app.state.service = build_service(settings)
        app.state.service.presenters.seed_defaults()
        logger.info(
            f"Generation: {'mock' if settings.mock_generation else 'SyncLabs'} "
            f"({settings.generation_resolution}), "
            f"delivery: {'mock' if settings.mock_delivery else 'WhatsApp'}"
        )
        yield
        logger.info("Personaliz shutting down...")
        remaining = await app.state.service.drain()
        if remaining:
            logger.warning(f"{remaining} job(s) abandoned at shutdown")

    app = FastAPI(title="Personaliz", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (video_router, actor_router, synclabs_router, whatsapp_router, admin_router):
        app.include_router(router)

    @app.get("/health")
    def health_check():
        """Liveness plus which providers are configured."""
        return {
            "status": "ok",
            "environment": settings.environment,
            "synclabs_api_key_set": settings.synclabs.configured,
            "whatsapp_api_key_set": settings.whatsapp.configured,
            "supabase_url_set": settings.use_supabase,
        }

    @app.get("/api/status")
    def system_status():
        svc = app.state.service
        _, total = svc.store.list_requests(limit=1)
        return {
            "status": "ok",
            "store": {
                "backend": "supabase" if settings.use_supabase else "memory",
                "reachable": svc.store.ping(),
            },
            "requests": total,
            "actors": len(svc.presenters.list()),
            "active_jobs": svc.active_jobs,
            "providers": {
                "synclabs": "mock" if settings.mock_generation else "live",
                "whatsapp": "mock" if settings.mock_delivery else "live",
                "generation_resolution": settings.generation_resolution,
            },
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all service metrics."""
        if app.state.service is not None:
            metrics.set_gauge("active_jobs", app.state.service.active_jobs)
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", get_settings().port))
    uvicorn.run("personaliz.main:app", host="0.0.0.0", port=port, reload=True)
