"""Custody Engine - API Routers"""
from .custody import router as custody_router
from .scheduler import router as scheduler_router

__all__ = [
    "custody_router",
    "scheduler_router",
]
