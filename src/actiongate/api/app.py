"""FastAPI application factory for the action gate.

``create_app`` accepts either a ready :class:`ActionPipeline` (tests, embedding
hosts) or a :class:`GatewayConfig`, in which case the lifespan handler builds
the pipeline on startup and closes it on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from actiongate import __version__
from actiongate.api.middleware import register_error_handlers
from actiongate.api.routers.actions import router as actions_router
from actiongate.api.routers.approvals import router as approvals_router
from actiongate.api.routers.audit import router as audit_router
from actiongate.api.routers.policy import router as policy_router
from actiongate.config import GatewayConfig
from actiongate.pipeline import ActionPipeline, build_pipeline

logger = logging.getLogger(__name__)


def create_app(
    pipeline: ActionPipeline | None = None,
    *,
    config: GatewayConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    pipeline:
        Pipeline serving the requests. The caller keeps ownership.
    config:
        Used to build (and later close) a pipeline on startup when
        *pipeline* is not given.
    """
    if pipeline is None and config is None:
        raise ValueError("create_app() needs a pipeline or a config")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: ActionPipeline | None = None
        if app.state.pipeline is None and config is not None:
            owned = await build_pipeline(config)
            app.state.pipeline = owned
            logger.info("Action pipeline started for gateway %s", config.name)
        yield
        if owned is not None:
            await owned.aclose()
            app.state.pipeline = None
            logger.info("Action pipeline closed")

    app = FastAPI(
        title="Action Gate API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.router.redirect_slashes = False

    register_error_handlers(app)

    app.include_router(actions_router)
    app.include_router(approvals_router)
    app.include_router(policy_router)
    app.include_router(audit_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
