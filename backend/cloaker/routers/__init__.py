"""
Cloaker - API Routers
"""
from .click import router as click_router
from .links import router as links_router
from .domains import router as domains_router
from .scheduler import router as scheduler_router

__all__ = [
    "click_router",
    "links_router",
    "domains_router",
    "scheduler_router",
]
