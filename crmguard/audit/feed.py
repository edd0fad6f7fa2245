"""Push-style change feeds over the activity log.

A change feed notifies subscribers when a new audit row is inserted so the
suspicious-activity aggregator can refresh without waiting for its poll.
Feeds are best-effort: ``connected`` drops to False when the push channel is
lost, and consumers keep their periodic refresh as the fallback path.

  LocalChangeFeed    — in-process; LocalSQLiteBackend publishes after each insert
  SupabaseChangeFeed — realtime INSERT subscription on the activity_logs table
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from crmguard.audit.models import AuditEntry, entry_from_row
from crmguard.constants import SUPABASE_TIMEOUT_S
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

FeedCallback = Callable[[Optional[AuditEntry]], Awaitable[None]]


@runtime_checkable
class ChangeFeed(Protocol):
    """Subscription interface shared by all feeds."""

    @property
    def connected(self) -> bool:
        ...

    async def subscribe(self, callback: FeedCallback) -> None:
        ...

    async def close(self) -> None:
        ...


# ─── LocalChangeFeed ──────────────────────────────────────────────────────────


class LocalChangeFeed:
    """In-process fan-out of freshly inserted entries."""

    def __init__(self) -> None:
        self._subscribers: list[FeedCallback] = []
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    async def subscribe(self, callback: FeedCallback) -> None:
        self._subscribers.append(callback)

    async def publish(self, entry: AuditEntry) -> None:
        """Deliver ``entry`` to every subscriber. Subscriber failures are logged."""
        for callback in list(self._subscribers):
            try:
                await callback(entry)
            except Exception as exc:
                logger.error(
                    "change_feed_subscriber_failed",
                    action=entry.action,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def close(self) -> None:
        self._subscribers.clear()
        self._connected = False


# ─── SupabaseChangeFeed ───────────────────────────────────────────────────────


class SupabaseChangeFeed:
    """Realtime INSERT subscription on the Supabase activity log.

    The realtime client invokes callbacks synchronously; each notification is
    turned into a task so the aggregator refresh runs on the event loop.
    """

    def __init__(
        self,
        client: Optional[Any],
        table: str = "activity_logs",
        channel_name: str = "activity-logs-realtime",
        timeout_s: float = SUPABASE_TIMEOUT_S,
    ) -> None:
        self._client = client
        self._table = table
        self._channel_name = channel_name
        self._timeout_s = timeout_s
        self._channel: Optional[Any] = None
        self._connected = False
        self._callbacks: list[FeedCallback] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def connected(self) -> bool:
        return self._connected

    async def subscribe(self, callback: FeedCallback) -> None:
        self._callbacks.append(callback)
        if self._channel is not None or self._client is None:
            return

        try:
            channel = self._client.channel(self._channel_name)
            channel.on_postgres_changes(
                "INSERT",
                schema="public",
                table=self._table,
                callback=self._on_insert,
            )
            await asyncio.wait_for(channel.subscribe(self._on_status), timeout=self._timeout_s)
            self._channel = channel
            logger.info("change_feed_subscribed", table=self._table)
        except Exception as exc:
            self._connected = False
            logger.error(
                "change_feed_subscribe_failed",
                table=self._table,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _on_status(self, status: Any, err: Optional[Exception] = None) -> None:
        state = getattr(status, "value", status)
        self._connected = state == "SUBSCRIBED"
        if not self._connected:
            logger.warning(
                "change_feed_disconnected",
                table=self._table,
                state=str(state),
                error=str(err) if err else None,
            )

    def _on_insert(self, payload: dict[str, Any]) -> None:
        entry: Optional[AuditEntry] = None
        try:
            data = payload.get("data", payload)
            record = data.get("record") or data.get("new")
            if record:
                entry = entry_from_row(record)
        except Exception as exc:
            logger.warning("change_feed_payload_unreadable", error=str(exc))

        loop = asyncio.get_running_loop()
        for callback in list(self._callbacks):
            task = loop.create_task(callback(entry))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        self._connected = False
        self._callbacks.clear()
        if self._channel is not None and self._client is not None:
            try:
                await asyncio.wait_for(
                    self._client.remove_channel(self._channel),
                    timeout=self._timeout_s,
                )
            except Exception as exc:
                logger.warning("change_feed_close_failed", error=str(exc))
        self._channel = None
