"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from actiongate.pipeline import ActionPipeline


def get_pipeline(request: Request) -> ActionPipeline:
    """Return the pipeline attached to the running app."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("ActionPipeline not initialized")
    return pipeline
