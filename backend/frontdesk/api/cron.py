"""
Cron endpoints.

External schedulers that cannot run Celery beat can trigger the PMS
credential sweeps over HTTP.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import get_db
from ..core.security import secrets_match
from ..services.credentials import CredentialLifecycleManager


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["Cron"])


def get_credential_manager(db: Session = Depends(get_db)):
    manager = CredentialLifecycleManager(db)
    try:
        yield manager
    finally:
        manager.close()


@router.post("/refresh-pms-tokens", summary="Refresh PMS credentials")
def refresh_pms_tokens(
    force: bool = Query(False, description="Full sweep, including integrations in ERROR"),
    x_cron_secret: Optional[str] = Header(None, alias="x-cron-secret"),
    manager: CredentialLifecycleManager = Depends(get_credential_manager),
) -> Dict[str, Any]:
    """
    Run a credential sweep.

    Without ``force`` tokens expiring soon are refreshed, along with
    integrations still waiting for their first token.
    """
    if not secrets_match(x_cron_secret, settings.cron_secret):
        logger.warning("Unauthorized cron request for PMS token refresh")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    summary = manager.refresh_all(force=True) if force else manager.refresh_expiring(include_pending=True)
    logger.info(f"Cron token refresh (force={force}): {summary.succeeded}/{summary.total} succeeded")
    return {"success": True, "force": force, "summary": summary.to_dict()}
