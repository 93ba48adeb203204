"""
Webhook alerting for keeper events.

- Send alerts to webhooks (Slack, Discord, PagerDuty, generic HTTP)
- Rate limiting per alert type to prevent alert storms
- Batching of alerts raised within a short window
- Async non-blocking delivery over aiohttp
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import aiohttp

logger = logging.getLogger("keeper")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    FAILURE_STREAK = auto()
    PREFLIGHT_FAILED = auto()
    INDETERMINATE_TX = auto()
    FAULTED = auto()
    RECOVERED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    vault: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "vault": self.vault,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord, pagerduty
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between same alert type
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "TaxVaultKeeper"
    vault: Optional[str] = None
    max_sent_history: int = 256  # alerts kept in AlertManager.sent

    @classmethod
    def from_settings(cls, settings, vault: Optional[str] = None) -> "AlertConfig":
        return cls(
            webhook_url=settings.alert_webhook_url,
            webhook_type=settings.alert_webhook_type,
            enabled=settings.alert_enabled,
            bot_name=f"TaxVaultKeeper-{settings.network}",
            vault=vault,
        )


_SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def _detail_items(alert: Alert, config: AlertConfig) -> List[tuple]:
        items = [("Type", alert.alert_type.name)]
        if alert.vault:
            items.insert(0, ("Vault", alert.vault))
        if config.include_details and alert.details:
            items.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
        return items

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = "#{:06X}".format(_SEVERITY_COLORS.get(alert.severity, 0x808080))
        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": [
                    {"title": k, "value": v, "short": True}
                    for k, v in WebhookFormatter._detail_items(alert, config)
                ],
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": _SEVERITY_COLORS.get(alert.severity, 0x808080),
                "fields": [
                    {"name": k, "value": v, "inline": True}
                    for k, v in WebhookFormatter._detail_items(alert, config)
                ],
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }],
        }

    @staticmethod
    def format_pagerduty(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """Format for PagerDuty Events API v2."""
        severity_map = {
            AlertSeverity.CRITICAL: "critical",
            AlertSeverity.WARNING: "warning",
            AlertSeverity.INFO: "info",
        }
        return {
            "routing_key": config.webhook_url,
            "event_action": "trigger",
            "dedup_key": f"{config.bot_name}-{alert.alert_type.name}-{alert.vault or 'global'}",
            "payload": {
                "summary": f"{alert.title}: {alert.message}",
                "severity": severity_map.get(alert.severity, "warning"),
                "source": config.bot_name,
                "component": alert.vault or "global",
                "custom_details": alert.details,
            },
        }


class AlertManager:
    """
    Alert delivery with per-type rate limiting and batching.

    ``send_alert`` only queues; delivery happens on a background task after
    the batch window, so a slow webhook never blocks the keeper cycle.
    """

    def __init__(self, config: Optional[AlertConfig] = None, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[AlertType, int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._session = session
        self._owns_session = session is None
        self.sent: Deque[Alert] = deque(maxlen=self.config.max_sent_history)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if the alert was queued, False if disabled, below the
            severity threshold, or rate limited
        """
        if not self.config.enabled:
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        last_time = self._last_alert_times.get(alert.alert_type, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name}")
            return False

        if alert.vault is None:
            alert.vault = self.config.vault
        self._last_alert_times[alert.alert_type] = now_ms
        self.sent.append(alert)
        if not self.config.webhook_url:
            logger.warning(f"ALERT {alert.severity.name} {alert.title}: {alert.message}")
            return True

        async with self._lock:
            self._pending_alerts.append(alert)
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def flush(self) -> None:
        """Wait for any in-flight batch to be delivered."""
        if self._batch_task is not None and not self._batch_task.done():
            await self._batch_task

    async def close(self) -> None:
        await self.flush()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()
        if not alerts:
            return
        if len(alerts) == 1:
            await self._http_post(self._format_alert(alerts[0]))
        else:
            await self._http_post(self._format_batch(alerts))

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        if self.config.webhook_type == "pagerduty":
            # Events API takes one event per request; the most severe wins.
            return self._format_alert(min(alerts, key=lambda a: a.severity.value))
        return {"alerts": [alert.to_dict() for alert in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
            "pagerduty": WebhookFormatter.format_pagerduty,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        for attempt in range(retries + 1):
            try:
                async with self._session.post(self.config.webhook_url, json=payload) as resp:
                    if resp.status < 300:
                        logger.debug("Alert delivered")
                        return True
                    logger.warning(f"Alert delivery failed: HTTP {resp.status}")
            except asyncio.TimeoutError:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except aiohttp.ClientError as e:
                logger.warning(f"Alert delivery error: {e}")
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    # ─────────────────────────────────────────────────────────────────────
    # Keeper alerts
    # ─────────────────────────────────────────────────────────────────────

    async def alert_failure_streak(self, failures: int, kind: str, error: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.FAILURE_STREAK,
            severity=AlertSeverity.CRITICAL,
            title="Keeper Cycles Failing",
            message=f"{failures} consecutive cycle failures (last: {kind}): {error}",
            details={"consecutive_failures": failures, "kind": kind, **details},
        ))

    async def alert_recovered(self, after_failures: int) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.RECOVERED,
            severity=AlertSeverity.WARNING,
            title="Keeper Recovered",
            message=f"Cycle succeeded after {after_failures} consecutive failures",
            details={"after_failures": after_failures},
        ))

    async def alert_preflight_failed(self, failed_checks: List[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.PREFLIGHT_FAILED,
            severity=AlertSeverity.CRITICAL,
            title="Preflight Failed",
            message=f"Keeper refused to start: {', '.join(failed_checks) or 'unknown'}",
            details={"failed_checks": failed_checks, **details},
        ))

    async def alert_indeterminate(self, step: str, signature: Optional[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.INDETERMINATE_TX,
            severity=AlertSeverity.WARNING,
            title="Transaction Outcome Unknown",
            message=f"{step} transaction {signature or '?'} was not confirmed in time",
            details={"step": step, "signature": signature, **details},
        ))

    async def alert_faulted(self, reason: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.FAULTED,
            severity=AlertSeverity.CRITICAL,
            title="Keeper Faulted",
            message=f"Keeper stopped on an unrecoverable error: {reason}",
            details=details,
        ))

    async def alert_startup(self, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Keeper Started",
            message=f"{self.config.bot_name} entered its cycle loop",
            details=details,
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Keeper Shutdown",
            message=f"{self.config.bot_name} shutting down: {reason}",
            details=details,
        ))
