"""Endpoint routers, one per resource."""
