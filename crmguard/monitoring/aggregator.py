"""SuspiciousActivityAggregator — live alarm over the activity log.

One internal operation, ``refresh()``, serves every trigger: the periodic
poll, change-feed notifications, and manual admin requests. Concurrent
triggers coalesce: a refresh requested while another is running causes
exactly one more pass, and every caller receives the newest snapshot.

Each pass:
  1. fetch recent activity and the reveals inside the rolling window
  2. enrich with profiles (name, e-mail)
  3. detect patterns (count >= threshold within window_minutes)
  4. reconcile incidents: open one per newly flagged user, close incidents
     whose user has no reveal left inside the window
  5. dispatch due automatic alerts concurrently; one failing user never
     blocks another

Incident bookkeeping replaces a bare "already notified" set:
  - an open incident is alerted automatically at most once on success
  - a failed dispatch is retried on later passes with exponential backoff
    (alert_backoff_seconds * 2**(attempts-1)) up to alert_max_attempts
  - dipping below threshold keeps the incident open; a user flagged again
    after the whole episode left the window gets a new incident
  - manual resend bypasses the record and never clears it
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from crmguard.audit.feed import ChangeFeed
from crmguard.audit.models import AuditEntry, AuditFilters, utcnow
from crmguard.audit.protocol import AuditBackend
from crmguard.auth.identity import Identity, IdentityDirectory
from crmguard.config import MonitoringConfig
from crmguard.constants import REVEAL_ACTION_PREFIX
from crmguard.monitoring.alerts import SYSTEM_ACTOR, AlertDispatcher
from crmguard.monitoring.patterns import UNKNOWN_USER_NAME, SuspiciousPattern, detect_suspicious_patterns
from crmguard.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)


@dataclass
class Incident:
    user_id: str
    window_start: Optional[datetime]
    opened_at: datetime
    notified_at: Optional[datetime] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_sends: int = 0

    @property
    def notified(self) -> bool:
        return self.notified_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "opened_at": self.opened_at.isoformat(),
            "notified_at": self.notified_at.isoformat() if self.notified_at else None,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
            "manual_sends": self.manual_sends,
        }


@dataclass(frozen=True)
class ActivityItem:
    entry: AuditEntry
    user_name: str

    def to_dict(self) -> dict[str, Any]:
        data = self.entry.to_dict()
        data["user_name"] = self.user_name
        return data


@dataclass(frozen=True)
class RefreshSnapshot:
    refreshed_at: datetime
    reason: str
    patterns: list[SuspiciousPattern] = field(default_factory=list)
    activities: list[ActivityItem] = field(default_factory=list)


class SuspiciousActivityAggregator:
    def __init__(
        self,
        audit: AuditBackend,
        directory: IdentityDirectory,
        dispatcher: AlertDispatcher,
        feed: Optional[ChangeFeed] = None,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit
        self._directory = directory
        self._dispatcher = dispatcher
        self._feed = feed
        self._config = config or MonitoringConfig()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._dirty = False
        self._snapshot: Optional[RefreshSnapshot] = None
        self._incidents: dict[str, Incident] = {}
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._feed_task: Optional[asyncio.Task[None]] = None
        self._running = False
        self.refresh_count = 0

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def snapshot(self) -> Optional[RefreshSnapshot]:
        return self._snapshot

    @property
    def patterns(self) -> list[SuspiciousPattern]:
        return list(self._snapshot.patterns) if self._snapshot else []

    @property
    def incidents(self) -> dict[str, Incident]:
        return dict(self._incidents)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def feed_connected(self) -> bool:
        return bool(self._feed is not None and self._feed.connected)

    # ── Refresh ───────────────────────────────────────────────────────────────

    async def refresh(self, reason: str = "manual") -> RefreshSnapshot:
        """Run (or join) an aggregation pass and return the newest snapshot."""
        self._dirty = True
        async with self._lock:
            while self._dirty:
                self._dirty = False
                await self._refresh_once(reason)
        assert self._snapshot is not None
        return self._snapshot

    async def _refresh_once(self, reason: str) -> None:
        now = self._clock()
        window = timedelta(minutes=self._config.window_minutes)

        with PerformanceLogger("aggregator_refresh", logger=logger):
            try:
                activities, reveals = await asyncio.gather(
                    self._audit.query_events(AuditFilters(limit=self._config.fetch_limit)),
                    self._audit.query_events(
                        AuditFilters(
                            action_prefix=REVEAL_ACTION_PREFIX,
                            since=now - window,
                            limit=self._config.fetch_limit,
                        )
                    ),
                )
            except Exception as exc:
                logger.error(
                    "aggregator_fetch_failed",
                    reason=reason,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                if self._snapshot is None:
                    self._snapshot = RefreshSnapshot(refreshed_at=now, reason=reason)
                return

            user_ids = {e.user_id for e in activities} | {e.user_id for e in reveals}
            profiles = await self._directory.get_profiles(user_ids)

            patterns = detect_suspicious_patterns(
                reveals,
                now=now,
                window_minutes=self._config.window_minutes,
                threshold=self._config.threshold,
                profiles=profiles,
            )
            in_window = {e.user_id for e in reveals if e.is_reveal and now - e.created_at < window}
            self._reconcile_incidents(patterns, in_window, now)
            self._snapshot = RefreshSnapshot(
                refreshed_at=now,
                reason=reason,
                patterns=patterns,
                activities=[ActivityItem(e, _display_name(profiles.get(e.user_id))) for e in activities],
            )
            self.refresh_count += 1
            await self._dispatch_due(patterns, now)

        logger.debug(
            "aggregator_refreshed",
            reason=reason,
            activities=len(activities),
            reveals=len(reveals),
            flagged=len(patterns),
        )

    def _reconcile_incidents(
        self, patterns: list[SuspiciousPattern], in_window: set[str], now: datetime
    ) -> None:
        flagged = {p.user_id: p for p in patterns}
        for user_id in list(self._incidents):
            # Open until the episode's last reveal has left the window.
            if user_id not in flagged and user_id not in in_window:
                incident = self._incidents.pop(user_id)
                logger.info(
                    "incident_closed",
                    user_id=user_id,
                    notified=incident.notified,
                    attempts=incident.attempts,
                )
        for user_id, pattern in flagged.items():
            if user_id not in self._incidents:
                self._incidents[user_id] = Incident(
                    user_id=user_id,
                    window_start=pattern.first_reveal_at,
                    opened_at=now,
                )
                logger.warning(
                    "incident_opened",
                    user_id=user_id,
                    reveal_count=pattern.reveal_count,
                    window_minutes=pattern.window_minutes,
                )

    async def _dispatch_due(self, patterns: list[SuspiciousPattern], now: datetime) -> None:
        due: list[tuple[SuspiciousPattern, Incident]] = []
        for pattern in patterns:
            incident = self._incidents.get(pattern.user_id)
            if incident is None or incident.notified:
                continue
            if incident.attempts >= self._config.alert_max_attempts:
                continue
            if incident.next_attempt_at is not None and now < incident.next_attempt_at:
                continue
            # Claimed before the await so an overlapping pass cannot double-send.
            incident.attempts += 1
            due.append((pattern, incident))

        if due:
            await asyncio.gather(*(self._auto_dispatch(p, i, now) for p, i in due))

    async def _auto_dispatch(self, pattern: SuspiciousPattern, incident: Incident, now: datetime) -> None:
        try:
            await self._dispatcher.dispatch(pattern, triggered_by=SYSTEM_ACTOR)
        except Exception as exc:
            incident.last_error = str(exc)
            will_retry = incident.attempts < self._config.alert_max_attempts
            if will_retry:
                delay = self._config.alert_backoff_seconds * 2 ** (incident.attempts - 1)
                incident.next_attempt_at = now + timedelta(seconds=delay)
            else:
                incident.next_attempt_at = None
            logger.error(
                "alert_dispatch_failed",
                user_id=pattern.user_id,
                attempts=incident.attempts,
                will_retry=will_retry,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return

        incident.notified_at = self._clock()
        incident.next_attempt_at = None
        incident.last_error = None
        logger.warning(
            "alert_dispatched",
            user_id=pattern.user_id,
            user_name=pattern.user_name,
            reveal_count=pattern.reveal_count,
            automatic=True,
        )

    # ── Manual actions ────────────────────────────────────────────────────────

    async def resend(self, user_id: str, requested_by: str) -> SuspiciousPattern:
        """Send one more alert for a currently flagged user.

        Raises:
            LookupError: ``user_id`` is not currently flagged.
            AlertDispatchError: The channel rejected the send.
        """
        pattern = next((p for p in self.patterns if p.user_id == user_id), None)
        if pattern is None:
            raise LookupError(user_id)
        await self._dispatcher.dispatch(pattern, triggered_by=requested_by)
        incident = self._incidents.get(user_id)
        if incident is not None:
            incident.manual_sends += 1
        logger.warning(
            "alert_dispatched",
            user_id=user_id,
            reveal_count=pattern.reveal_count,
            automatic=False,
            requested_by=requested_by,
        )
        return pattern

    async def activity(
        self,
        search: Optional[str] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ActivityItem]:
        """Recent activity filtered by free text (user name or action) and action substring."""
        snapshot = self._snapshot or await self.refresh("activity_view")
        needle = search.lower() if search else None
        items = [
            item
            for item in snapshot.activities
            if (
                needle is None
                or needle in item.user_name.lower()
                or needle in item.entry.action.lower()
            )
            and (action is None or action in item.entry.action)
        ]
        return items[:limit] if limit is not None else items

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to the change feed and start the periodic poll."""
        if self._running:
            return
        self._running = True
        if self._feed is not None:
            await self._feed.subscribe(self._on_feed_event)
        self._poll_task = asyncio.create_task(self._poll_loop(), name="aggregator_poll")
        logger.info(
            "aggregator_started",
            poll_interval_s=self._config.poll_interval_seconds,
            window_minutes=self._config.window_minutes,
            threshold=self._config.threshold,
            feed_connected=self.feed_connected,
        )

    async def stop(self) -> None:
        self._running = False
        for task in (self._poll_task, self._feed_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._feed_task = None
        logger.info("aggregator_stopped")

    async def drain(self) -> None:
        """Wait for a feed-triggered refresh in flight, if any."""
        while self._feed_task is not None and not self._feed_task.done():
            await asyncio.gather(self._feed_task, return_exceptions=True)

    async def _on_feed_event(self, entry: Optional[AuditEntry]) -> None:
        # Never awaited inline: the writer that published this entry may be
        # an alert dispatch running under the refresh lock.
        if not self._running:
            return
        if self._feed_task is not None and not self._feed_task.done():
            self._dirty = True
            return
        self._feed_task = asyncio.create_task(self._feed_refresh(), name="aggregator_feed_refresh")

    async def _feed_refresh(self) -> None:
        try:
            await self.refresh("change_feed")
            # An event that arrived after the last pass left the lock.
            while self._dirty and self._running:
                await self.refresh("change_feed")
        except Exception as exc:
            logger.error(
                "aggregator_feed_refresh_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh("poll")
            except Exception as exc:
                logger.error(
                    "aggregator_poll_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self._config.poll_interval_seconds)


def _display_name(profile: Optional[Identity]) -> str:
    if profile is not None and profile.full_name:
        return profile.full_name
    return UNKNOWN_USER_NAME
