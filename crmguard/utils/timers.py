"""Owned, cancellable timers for the client-resident security components.

Every detector, the violation ledger, and each masked field own a
``TimerScope``. A scope hands out ``TimerHandle`` objects for one-shot
(``call_later``) and periodic (``call_every``) callbacks and tracks the
background coroutines it spawned (audit writes, reveal calls, sign-out).

Teardown rules:
  - ``close()`` cancels every pending timer synchronously. Nothing scheduled
    through the scope fires afterwards.
  - In-flight coroutines are NOT cancelled. They run to completion and the
    owner is expected to discard their results (check ``scope.closed``).
  - Timer callbacks never raise into the event loop: failures are logged.

All scheduling goes through the running asyncio loop, so scopes must be used
from code executing inside that loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional

from crmguard.utils.logger import get_logger

logger = get_logger(__name__)


class TimerHandle:
    """A single scheduled callback owned by a ``TimerScope``."""

    def __init__(self, scope: "TimerScope", name: str, periodic: bool = False) -> None:
        self._scope = scope
        self.name = name
        self.periodic = periodic
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        """True while the callback is still scheduled."""
        return not self._cancelled and self._handle is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the callback. Idempotent."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._cancelled = True
        self._scope._forget(self)


class TimerScope:
    """Scoped set of timers and background tasks, released on ``close()``.

    Usage:
        scope = TimerScope("masked_field")
        hide = scope.call_later(60, field.hide, name="auto_hide")
        scope.spawn(client.reveal(lead_id, "email"), name="reveal")
        ...
        scope.close()   # hide never fires after this point
    """

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._timers: set[TimerHandle] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ── Scheduling ────────────────────────────────────────────────────────────

    def call_later(
        self,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        name: str = "timer",
    ) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        self._ensure_open()
        loop = asyncio.get_running_loop()
        handle = TimerHandle(self, name)

        def _fire() -> None:
            handle._handle = None
            self._timers.discard(handle)
            self._run(handle, callback, args)

        handle._handle = loop.call_later(max(delay, 0.0), _fire)
        self._timers.add(handle)
        return handle

    def call_every(
        self,
        interval: float,
        callback: Callable[..., Any],
        *args: Any,
        name: str = "interval",
    ) -> TimerHandle:
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._ensure_open()
        loop = asyncio.get_running_loop()
        handle = TimerHandle(self, name, periodic=True)

        def _tick() -> None:
            if handle.cancelled:
                return
            # Re-arm first so the callback itself may cancel the handle.
            handle._handle = loop.call_later(interval, _tick)
            self._run(handle, callback, args)

        handle._handle = loop.call_later(interval, _tick)
        self._timers.add(handle)
        return handle

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: str = "task",
    ) -> Optional[asyncio.Task[Any]]:
        """Run ``coro`` in the background and track it until it finishes.

        Returns None (and closes the coroutine unstarted) if the scope is
        already closed.
        """
        if self._closed:
            coro.close()
            logger.debug("timer_scope_spawn_after_close", scope=self.name, task=name)
            return None
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.name}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Teardown ──────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Cancel all pending timers. In-flight tasks are left to complete."""
        self._closed = True
        for handle in list(self._timers):
            handle.cancel()

    def __enter__(self) -> "TimerScope":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    async def __aenter__(self) -> "TimerScope":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"TimerScope '{self.name}' is closed")

    def _forget(self, handle: TimerHandle) -> None:
        self._timers.discard(handle)

    def _run(self, handle: TimerHandle, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception as exc:
            logger.error(
                "timer_callback_failed",
                scope=self.name,
                timer=handle.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "timer_scope_task_failed",
                scope=self.name,
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )
