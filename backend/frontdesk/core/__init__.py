"""
Core application components.

Configuration, database, security and error types.
"""

from .config import settings, get_settings
from .database import Base, SessionLocal, engine, get_db

__all__ = [
    "settings",
    "get_settings",
    "Base",
    "SessionLocal",
    "engine",
    "get_db",
]
