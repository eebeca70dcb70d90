"""
WorkLog Sentinel - Alert Notification Service

Logs every alert and posts it to the configured webhook. Outbound
payloads go through the masking allow-list.
"""

import logging
from typing import Optional

import httpx

from sentinel.models.security_alert import SecurityAlert
from sentinel.services.masking_service import APIMaskingManager
from sentinel.utils.error_handling import DomainNotAllowed

logger = logging.getLogger(__name__)


class AlertNotifier:
    """Delivers alerts to the log and an optional webhook."""

    def __init__(
        self,
        masking: APIMaskingManager,
        webhook_url: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._masking = masking
        self._webhook_url = webhook_url
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=10.0,
            )
        return self._client

    async def notify(self, alert: SecurityAlert) -> bool:
        """
        Deliver an alert. Returns True when the webhook accepted it.

        Delivery problems are logged; they never fail alert creation.
        """
        logger.warning(
            f"[ALERT] {alert.severity.value.upper()} {alert.rule_name} "
            f"scope={alert.scope_key} events={alert.event_count}"
        )
        if not self._webhook_url:
            return False

        try:
            payload = self._masking.mask_for_external_call(alert.to_dict(), self._webhook_url)
        except DomainNotAllowed:
            logger.error("Alert webhook domain is not allow-listed; webhook delivery skipped")
            return False

        client = await self._get_client()
        try:
            response = await client.post(self._webhook_url, json={"type": "security_alert", "alert": payload})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook delivery failed: {e}")
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
