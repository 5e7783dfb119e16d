"""REST API over the action pipeline."""

from actiongate.api.app import create_app

__all__ = ["create_app"]
