"""FastAPI application and routes."""

from approval_engine.api.app import configure_services, create_app
from approval_engine.api.routes import router

__all__ = ["configure_services", "create_app", "router"]
