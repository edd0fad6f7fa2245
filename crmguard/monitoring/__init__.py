"""Suspicious-activity monitoring: pattern detection, aggregation and alerts."""

from crmguard.monitoring.aggregator import (
    ActivityItem,
    Incident,
    RefreshSnapshot,
    SuspiciousActivityAggregator,
)
from crmguard.monitoring.alerts import (
    RESEND_API_URL,
    SYSTEM_ACTOR,
    AlertDispatcher,
    LoggingAlertDispatcher,
    ResendEmailDispatcher,
    create_alert_dispatcher,
    render_alert_html,
    render_subject,
)
from crmguard.monitoring.patterns import (
    UNKNOWN_USER_NAME,
    RecentAction,
    SuspiciousPattern,
    detect_suspicious_patterns,
)

__all__ = [
    "ActivityItem",
    "AlertDispatcher",
    "Incident",
    "LoggingAlertDispatcher",
    "RESEND_API_URL",
    "RecentAction",
    "RefreshSnapshot",
    "ResendEmailDispatcher",
    "SYSTEM_ACTOR",
    "SuspiciousActivityAggregator",
    "SuspiciousPattern",
    "UNKNOWN_USER_NAME",
    "create_alert_dispatcher",
    "detect_suspicious_patterns",
    "render_alert_html",
    "render_subject",
]
