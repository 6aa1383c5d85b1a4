"""
Celery tasks package for background credential upkeep.
"""

from .celery_app import celery_app
from .credential_tasks import refresh_all_tokens, refresh_expiring_tokens, refresh_integration

__all__ = [
    "celery_app",
    "refresh_all_tokens",
    "refresh_expiring_tokens",
    "refresh_integration",
]
