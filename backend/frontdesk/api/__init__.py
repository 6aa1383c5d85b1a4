"""
API route controllers for the receptionist backend.

Contains FastAPI routers for different endpoints.
Routes handle HTTP requests and delegate to services for business logic.
"""

from .health import router as health_router
from .voice import router as voice_router
from .tools import router as tools_router
from .voice_session import router as voice_session_router
from .cron import router as cron_router

__all__ = [
    "health_router",
    "voice_router",
    "tools_router",
    "voice_session_router",
    "cron_router",
]
