"""
PMS credential lifecycle management.

Keeps each clinic's Sikka ``request_key`` valid without manual
intervention. State machine per integration:

    SETUP_REQUIRED -> ACTIVE <-> ERROR

A refresh tries the refresh grant first, then falls back to the initial
grant with the office credentials. If both fail the integration moves to
ERROR with ``last_error`` set, and existing tokens are left untouched.

Provides:
- Single integration refresh
- Expiring-token sweep (ACTIVE tokens expiring within a window, optionally
  SETUP_REQUIRED ones too)
- Full sweep (ACTIVE + SETUP_REQUIRED, optionally ERROR)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import CredentialError
from ..core.transactions import transaction
from ..models.pms_integration import PmsIntegration, PmsIntegrationStatus


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 86400


# =============================================================================
# Token Grants
# =============================================================================

@dataclass
class TokenGrant:
    request_key: str
    refresh_key: str
    expires_in: int


def parse_expires_in(value: Any) -> int:
    """
    Parse Sikka's ``expires_in`` field.

    Sikka reports lifetimes as text such as ``"85603 second(s)"``; the
    leading integer is used. Missing or unparseable values give 86400.
    """
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    match = re.match(r"\s*(\d+)", str(value or ""))
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return DEFAULT_TOKEN_LIFETIME_SECONDS


class SikkaTokenClient:
    """
    Client for Sikka's ``/request_key`` token endpoint.

    Raises ``CredentialError`` on any failed grant.
    """

    def __init__(self, client: Optional[httpx.Client] = None):
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=settings.sikka_base_url,
            timeout=settings.sikka_token_timeout,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def refresh_grant(self, refresh_key: str, app_id: str, app_key: str) -> TokenGrant:
        return self._post({
            "grant_type": "refresh_key",
            "refresh_key": refresh_key,
            "app_id": app_id,
            "app_key": app_key,
        })

    def initial_grant(self, office_id: str, secret_key: str, app_id: str, app_key: str) -> TokenGrant:
        return self._post({
            "grant_type": "request_key",
            "office_id": office_id,
            "secret_key": secret_key,
            "app_id": app_id,
            "app_key": app_key,
        })

    def _post(self, payload: Dict[str, str]) -> TokenGrant:
        grant_type = payload["grant_type"]
        try:
            response = self._client.post("/request_key", json=payload)
        except httpx.TimeoutException as e:
            raise CredentialError(f"{grant_type} grant timed out") from e
        except httpx.RequestError as e:
            raise CredentialError(f"{grant_type} grant request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise CredentialError(f"Sikka API error {response.status_code} on {grant_type} grant")

        try:
            data = response.json()
        except ValueError as e:
            raise CredentialError(f"Invalid token response on {grant_type} grant") from e

        if not data.get("request_key") or not data.get("refresh_key"):
            raise CredentialError(f"Invalid token response on {grant_type} grant")

        return TokenGrant(
            request_key=data["request_key"],
            refresh_key=data["refresh_key"],
            expires_in=parse_expires_in(data.get("expires_in")),
        )


# =============================================================================
# Lifecycle Manager
# =============================================================================

@dataclass
class RefreshSummary:
    """Outcome of a sweep. ``results`` maps integration id to success."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: Dict[str, bool] = field(default_factory=dict)

    def record(self, integration_id: UUID, ok: bool) -> None:
        self.total += 1
        self.results[str(integration_id)] = ok
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.succeeded,
            "failed": self.failed,
            "results": self.results,
        }


class CredentialLifecycleManager:
    """
    Refreshes PMS credentials and owns integration status transitions.

    Example usage:
        manager = CredentialLifecycleManager(db)
        manager.refresh(integration.id)
        summary = manager.refresh_expiring()
    """

    def __init__(
        self,
        db: Session,
        token_client: Optional[SikkaTokenClient] = None,
        now=None,
    ):
        self.db = db
        self._token_client = token_client
        self._owns_token_client = token_client is None
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def token_client(self) -> SikkaTokenClient:
        if self._token_client is None:
            self._token_client = SikkaTokenClient()
        return self._token_client

    def close(self) -> None:
        """Release the token client if this manager created it."""
        if self._owns_token_client and self._token_client is not None:
            self._token_client.close()
            self._token_client = None

    # -------------------------------------------------------------------------
    # Single integration
    # -------------------------------------------------------------------------

    def refresh(self, integration_id: UUID) -> bool:
        """
        Refresh one integration's tokens.

        Returns:
            True if new tokens were persisted and the integration is ACTIVE,
            False otherwise. Upstream failures never raise.
        """
        integration = self.db.get(PmsIntegration, integration_id)
        if integration is None:
            logger.warning(f"Token refresh skipped: integration {integration_id} not found")
            return False

        app_id, app_key = self._app_credentials(integration)
        errors: List[str] = []
        grant: Optional[TokenGrant] = None

        if not app_id or not app_key:
            errors.append("missing app_id/app_key")
        else:
            if integration.refresh_key:
                try:
                    grant = self.token_client.refresh_grant(integration.refresh_key, app_id, app_key)
                except CredentialError as e:
                    errors.append(str(e))
                    logger.warning(f"Refresh grant failed for {integration_id}, trying initial grant")

            if grant is None:
                if integration.office_id and integration.secret_key:
                    try:
                        grant = self.token_client.initial_grant(
                            integration.office_id, integration.secret_key, app_id, app_key
                        )
                    except CredentialError as e:
                        errors.append(str(e))
                else:
                    errors.append("missing office_id/secret_key")

        if grant is None:
            self.mark_error(integration, f"Token refresh failed: {'; '.join(errors)}")
            return False

        with transaction(self.db):
            integration.request_key = grant.request_key
            integration.refresh_key = grant.refresh_key
            integration.token_expiry = self._now() + timedelta(seconds=grant.expires_in)
            integration.status = PmsIntegrationStatus.ACTIVE
            integration.last_error = None

        logger.info(
            f"Token refreshed for integration {integration_id}, "
            f"expires in {grant.expires_in}s"
        )
        return True

    def mark_error(self, integration: PmsIntegration, reason: str) -> None:
        """
        Move an integration to ERROR.

        Tokens are kept: they may still be valid and the next successful
        refresh will replace them.
        """
        with transaction(self.db):
            integration.status = PmsIntegrationStatus.ERROR
            integration.last_error = reason[:2000]
        logger.error(f"PMS integration {integration.id} marked ERROR: {reason}")

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    def refresh_expiring(
        self,
        window: Optional[timedelta] = None,
        include_pending: bool = False,
    ) -> RefreshSummary:
        """
        Refresh ACTIVE integrations whose token expires within ``window``.

        Integrations with no recorded expiry or no request key are included.

        Args:
            window: Look-ahead before expiry; defaults to the configured window
            include_pending: Also pick up SETUP_REQUIRED integrations so newly
                onboarded offices get their first token
        """
        window = window or timedelta(hours=settings.token_refresh_window_hours)
        cutoff = self._now() + window
        statuses = [PmsIntegrationStatus.ACTIVE]
        if include_pending:
            statuses.append(PmsIntegrationStatus.SETUP_REQUIRED)
        query = select(PmsIntegration.id).where(
            PmsIntegration.status.in_(statuses),
            or_(
                PmsIntegration.token_expiry.is_(None),
                PmsIntegration.token_expiry < cutoff,
                PmsIntegration.request_key.is_(None),
            ),
        )
        ids = list(self.db.scalars(query))
        logger.info(f"Found {len(ids)} expiring PMS token(s)")
        return self._refresh_each(ids)

    def refresh_all(self, force: bool = False) -> RefreshSummary:
        """
        Refresh every ACTIVE and SETUP_REQUIRED integration.

        Args:
            force: Also retry integrations currently in ERROR
        """
        statuses = [PmsIntegrationStatus.ACTIVE, PmsIntegrationStatus.SETUP_REQUIRED]
        if force:
            statuses.append(PmsIntegrationStatus.ERROR)
        query = select(PmsIntegration.id).where(PmsIntegration.status.in_(statuses))
        ids = list(self.db.scalars(query))
        logger.info(f"Full token sweep over {len(ids)} integration(s) (force={force})")
        return self._refresh_each(ids)

    def _refresh_each(self, integration_ids: List[UUID]) -> RefreshSummary:
        summary = RefreshSummary()
        for integration_id in integration_ids:
            try:
                ok = self.refresh(integration_id)
            except Exception as e:
                # One integration must never abort the sweep
                self.db.rollback()
                logger.error(f"Unexpected error refreshing {integration_id}: {type(e).__name__}")
                ok = False
            summary.record(integration_id, ok)
        logger.info(f"Token sweep complete: {summary.succeeded} success, {summary.failed} failed")
        return summary

    @staticmethod
    def _app_credentials(integration: PmsIntegration):
        config = integration.config or {}
        app_id = config.get("app_id") or config.get("appId") or settings.sikka_app_id
        app_key = config.get("app_key") or config.get("appKey") or settings.sikka_app_key
        return app_id, app_key
