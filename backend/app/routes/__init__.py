"""API routes."""

from .sync import router as sync_router
from .units import router as units_router

__all__ = [
    "sync_router",
    "units_router",
]
