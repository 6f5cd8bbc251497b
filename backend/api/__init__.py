"""API module for HTTP routes.

This module exposes the FastAPI routers and exception handlers for the
sandbox runtime backend.
"""

from api.errors import register_exception_handlers
from api.routes import health_router, router

__all__ = ["health_router", "register_exception_handlers", "router"]
