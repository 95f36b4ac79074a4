"""API routes module."""
from .sessions import router as sessions_router
from .users import router as users_router
from .billing import router as billing_router

__all__ = ["sessions_router", "users_router", "billing_router"]
