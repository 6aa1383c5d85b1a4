"""
Celery tasks for PMS credential upkeep.

Provides:
- Expiring-token sweep (every 30 minutes by default)
- Full sweep over ACTIVE and SETUP_REQUIRED integrations (every 23 hours)
- Single integration refresh on demand
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task
from sqlalchemy.orm import Session

from ..core.database import SessionLocal
from ..services.credentials import CredentialLifecycleManager


logger = logging.getLogger(__name__)


def get_db_session() -> Session:
    """Create a new database session for task execution."""
    return SessionLocal()


@shared_task(name="frontdesk.tasks.credential_tasks.refresh_expiring_tokens")
def refresh_expiring_tokens(window_hours: Optional[float] = None) -> Dict[str, Any]:
    """Refresh ACTIVE integrations whose tokens expire soon."""
    db = get_db_session()
    manager = CredentialLifecycleManager(db)
    try:
        window = timedelta(hours=window_hours) if window_hours else None
        summary = manager.refresh_expiring(window)
        return summary.to_dict()
    finally:
        manager.close()
        db.close()


@shared_task(name="frontdesk.tasks.credential_tasks.refresh_all_tokens")
def refresh_all_tokens(force: bool = False) -> Dict[str, Any]:
    """Refresh every ACTIVE and SETUP_REQUIRED integration."""
    db = get_db_session()
    manager = CredentialLifecycleManager(db)
    try:
        summary = manager.refresh_all(force=force)
        return summary.to_dict()
    finally:
        manager.close()
        db.close()


@shared_task(name="frontdesk.tasks.credential_tasks.refresh_integration")
def refresh_integration(integration_id: str) -> Dict[str, Any]:
    """Refresh a single integration, e.g. right after onboarding."""
    db = get_db_session()
    manager = CredentialLifecycleManager(db)
    try:
        ok = manager.refresh(UUID(integration_id))
        logger.info(f"On-demand refresh of {integration_id}: {'ok' if ok else 'failed'}")
        return {"integration_id": integration_id, "success": ok}
    finally:
        manager.close()
        db.close()
