"""Alert dispatch — the outbound notification boundary.

  ResendEmailDispatcher  — e-mail to the administrator via the Resend HTTP API;
                           a successful send appends a ``security_alert_sent``
                           audit entry
  LoggingAlertDispatcher — fallback when RESEND_API_KEY / ADMIN_NOTIFICATION_EMAIL
                           are not configured; logs the alert only

Dispatchers raise AlertDispatchError on failure. The aggregator decides what
to do about it.
"""

from __future__ import annotations

import html
from typing import Any, Optional, Protocol

import httpx

from crmguard.audit.models import ACTION_SECURITY_ALERT_SENT, ENTITY_AGENT, AuditEntry
from crmguard.audit.protocol import AuditBackend
from crmguard.config import AlertConfig
from crmguard.constants import ALERT_HTTP_TIMEOUT_S, ALERT_MAX_LISTED_ACTIONS
from crmguard.disclosure.errors import AlertDispatchError
from crmguard.monitoring.patterns import SuspiciousPattern
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

SYSTEM_ACTOR = "system"


class AlertDispatcher(Protocol):
    async def dispatch(self, pattern: SuspiciousPattern, triggered_by: str = SYSTEM_ACTOR) -> Optional[str]:
        """Send one alert. Returns a provider message id when there is one.

        Raises:
            AlertDispatchError: The channel rejected or could not take the alert.
        """
        ...

    async def aclose(self) -> None:
        ...


def render_subject(pattern: SuspiciousPattern, prefix: str) -> str:
    return f"⚠️ {prefix} - {pattern.user_name}"


def render_alert_html(pattern: SuspiciousPattern) -> str:
    """HTML body. Every interpolated value is escaped."""
    name = html.escape(pattern.user_name)
    email = html.escape(pattern.user_email or "-")
    user_id = html.escape(pattern.user_id)
    window = html.escape(f"{pattern.window_minutes:g}")
    actions = "".join(
        f"<li>{html.escape(a.action)} at {html.escape(a.timestamp.isoformat())}</li>"
        for a in pattern.recent_actions[:ALERT_MAX_LISTED_ACTIONS]
    )
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        "<h1>Security Alert</h1>"
        "<h2>Suspicious Activity Detected</h2>"
        f"<p><strong>{name}</strong> has revealed sensitive data "
        f"<strong>{pattern.reveal_count} times</strong> in the last "
        f"<strong>{window} minutes</strong>.</p>"
        "<h3>Agent Details</h3>"
        "<table>"
        f"<tr><td>Name:</td><td><strong>{name}</strong></td></tr>"
        f"<tr><td>Email:</td><td>{email}</td></tr>"
        f'<tr><td>Agent ID:</td><td style="font-family: monospace;">{user_id}</td></tr>'
        "</table>"
        "<h3>Recent Actions</h3>"
        f"<ul>{actions}</ul>"
        "<p><strong>Recommended Actions:</strong></p>"
        "<ul>"
        "<li>Review the agent's activity in the Admin Dashboard</li>"
        "<li>Consider temporarily disabling the agent's access</li>"
        "<li>Contact the agent to verify their activity</li>"
        "</ul>"
        "<p>This is an automated security alert from your CRM system.</p>"
        "</div>"
    )


class ResendEmailDispatcher:
    """Sends alerts through the Resend e-mail API.

    Usage:
        dispatcher = ResendEmailDispatcher(config.alerts, audit_backend)
        await dispatcher.dispatch(pattern)
        await dispatcher.aclose()
    """

    def __init__(
        self,
        config: AlertConfig,
        audit: AuditBackend,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = ALERT_HTTP_TIMEOUT_S,
    ) -> None:
        if not config.enabled:
            raise ValueError("ResendEmailDispatcher requires RESEND_API_KEY and ADMIN_NOTIFICATION_EMAIL")
        self._config = config
        self._audit = audit
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def dispatch(self, pattern: SuspiciousPattern, triggered_by: str = SYSTEM_ACTOR) -> Optional[str]:
        payload = {
            "from": self._config.from_address,
            "to": [self._config.admin_email],
            "subject": render_subject(pattern, self._config.subject_prefix),
            "html": render_alert_html(pattern),
        }
        try:
            response = await self._http.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise AlertDispatchError(f"Alert request failed: {type(exc).__name__}") from exc

        body = _json_or_empty(response)
        if response.status_code >= 400:
            raise AlertDispatchError(
                f"Alert rejected by provider: {body.get('message') or response.status_code}",
                status_code=response.status_code,
            )

        email_id = body.get("id")
        ok = await self._audit.log_event(
            AuditEntry(
                user_id=triggered_by,
                action=ACTION_SECURITY_ALERT_SENT,
                entity_type=ENTITY_AGENT,
                entity_id=pattern.user_id,
                details={
                    "alert_type": "suspicious_activity",
                    "agent_name": pattern.user_name,
                    "reveal_count": pattern.reveal_count,
                    "time_window_minutes": pattern.window_minutes,
                    "notification_sent_to": self._config.admin_email,
                    "email_id": email_id,
                },
            )
        )
        if not ok:
            logger.warning("alert_audit_write_failed", agent_id=pattern.user_id)
        logger.info(
            "alert_email_sent",
            agent_id=pattern.user_id,
            reveal_count=pattern.reveal_count,
            email_id=email_id,
        )
        return email_id

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class LoggingAlertDispatcher:
    """Logs alerts when no e-mail channel is configured."""

    async def dispatch(self, pattern: SuspiciousPattern, triggered_by: str = SYSTEM_ACTOR) -> Optional[str]:
        logger.warning(
            "security_alert_logged",
            agent_id=pattern.user_id,
            agent_name=pattern.user_name,
            reveal_count=pattern.reveal_count,
            window_minutes=pattern.window_minutes,
            triggered_by=triggered_by,
        )
        return None

    async def aclose(self) -> None:
        return None


def create_alert_dispatcher(config: AlertConfig, audit: AuditBackend) -> AlertDispatcher:
    if config.enabled:
        logger.info("alert_dispatcher_selected", dispatcher="ResendEmailDispatcher")
        return ResendEmailDispatcher(config, audit)
    logger.warning(
        "alert_dispatcher_selected",
        dispatcher="LoggingAlertDispatcher",
        reason="RESEND_API_KEY or ADMIN_NOTIFICATION_EMAIL not set",
    )
    return LoggingAlertDispatcher()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
