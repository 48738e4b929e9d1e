"""Countdown state machine for time-limited sandboxes.

A sandbox's start mark is persisted per sandbox id the first time it is
observed, so a reload during the same sandbox's life picks up the original
mark instead of restarting the countdown.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from workbench.models import (
    LifecycleEvent,
    LifecycleObservation,
    LifecycleState,
    SandboxClock,
    utcnow,
)
from workbench.persistence.slots import SlotStore
from workbench.persistence.store import PersistenceStore


logger = logging.getLogger("workbench.sandbox.lifecycle")

Listener = Callable[[LifecycleEvent], Awaitable[None]]


class ClockStore:
    """Persisted ``sandbox_id -> started_at`` marks with init-on-first-observe."""

    def __init__(
        self,
        slots: SlotStore,
        *,
        lifetime: timedelta,
        warning_threshold: timedelta,
        now: Callable[[], datetime] = utcnow,
        prefix: str = "",
    ):
        if warning_threshold > lifetime:
            raise ValueError("warning threshold cannot exceed the sandbox lifetime")
        self.slots = slots
        self.lifetime = lifetime
        self.warning_threshold = warning_threshold
        self.now = now
        self.prefix = prefix
        self._lock = asyncio.Lock()

    def _key(self, sandbox_id: str) -> str:
        key = f"sandbox_start:{sandbox_id}"
        return f"{self.prefix}:{key}" if self.prefix else key

    async def get_or_create(self, sandbox_id: str) -> SandboxClock:
        async with self._lock:
            raw = await self.slots.read(self._key(sandbox_id))
            started_at: datetime | None = None
            if raw:
                try:
                    started_at = datetime.fromisoformat(raw.strip())
                except ValueError:
                    logger.warning("discarding unreadable start mark for %s: %r", sandbox_id, raw)
            if started_at is None:
                started_at = self.now()
                await self.slots.write(self._key(sandbox_id), started_at.isoformat())
                logger.info("sandbox %s first observed at %s", sandbox_id, started_at.isoformat())
        return SandboxClock(
            sandbox_id=sandbox_id,
            started_at=started_at,
            lifetime=self.lifetime,
            warning_threshold=self.warning_threshold,
        )

    async def forget(self, sandbox_id: str) -> None:
        await self.slots.delete(self._key(sandbox_id))


class LifecycleMonitor:
    """Watches the active sandbox and reports warning/expiry events.

    The monitor only detects; listeners (the recovery coordinator) decide what
    to do. Observation never moves backwards for a sandbox, and switching to
    another sandbox cancels polling of the previous one.
    """

    def __init__(
        self,
        clocks: ClockStore,
        persistence: PersistenceStore | None = None,
        *,
        poll_interval: float = 1.0,
    ):
        self.clocks = clocks
        self.persistence = persistence
        self.poll_interval = poll_interval
        self.active_sandbox_id: str | None = None
        self._listeners: list[Listener] = []
        self._reported: dict[str, LifecycleState] = {}
        self._notified: dict[str, set[LifecycleState]] = {}
        self._task: asyncio.Task[None] | None = None
        self._dispatched: set[asyncio.Task[None]] = set()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def observe(self, sandbox_id: str) -> LifecycleObservation:
        clock = await self.clocks.get_or_create(sandbox_id)
        now = self.clocks.now()
        state = clock.state_at(now)
        previous = self._reported.get(sandbox_id)
        if previous is not None and previous.rank > state.rank:
            state = previous
        self._reported[sandbox_id] = state

        remaining = clock.remaining_at(now).total_seconds()
        if state is LifecycleState.EXPIRED:
            remaining = 0.0
        has_backup = await self.persistence.exists() if self.persistence else False
        return LifecycleObservation(
            sandbox_id=sandbox_id,
            state=state,
            remaining_seconds=remaining,
            started_at=clock.started_at,
            has_backup=has_backup,
        )

    async def check(self, sandbox_id: str) -> LifecycleObservation:
        """Observe and notify listeners on first entry into warning or expired."""
        observation = await self.observe(sandbox_id)
        if observation.state is LifecycleState.ACTIVE:
            return observation
        seen = self._notified.setdefault(sandbox_id, set())
        if observation.state in seen:
            return observation
        seen.add(observation.state)
        event = LifecycleEvent(
            sandbox_id=sandbox_id,
            state=observation.state,
            remaining_seconds=observation.remaining_seconds,
        )
        logger.info(
            "sandbox %s entered %s (%.0fs left)",
            sandbox_id,
            observation.state.value,
            observation.remaining_seconds,
        )
        for listener in self._listeners:
            task = asyncio.create_task(self._dispatch(listener, event))
            self._dispatched.add(task)
            task.add_done_callback(self._dispatched.discard)
        return observation

    async def _dispatch(self, listener: Listener, event: LifecycleEvent) -> None:
        try:
            await listener(event)
        except Exception:
            logger.exception("lifecycle listener failed for %s", event.sandbox_id)

    async def wait_for_listeners(self) -> None:
        if self._dispatched:
            await asyncio.gather(*list(self._dispatched), return_exceptions=True)

    async def watch(self, sandbox_id: str, interval: float | None = None) -> None:
        """Make sandbox_id the active sandbox and poll it in the background."""
        if (
            self.active_sandbox_id == sandbox_id
            and self._task is not None
            and not self._task.done()
        ):
            return
        previous = self.active_sandbox_id
        await self.stop()
        if previous is not None and previous != sandbox_id:
            self.forget(previous)
        self.active_sandbox_id = sandbox_id
        self._task = asyncio.create_task(
            self._poll(sandbox_id, interval or self.poll_interval),
            name=f"lifecycle:{sandbox_id}",
        )

    def forget(self, sandbox_id: str) -> None:
        """Drop in-memory state for a sandbox; its persisted mark is kept."""
        self._reported.pop(sandbox_id, None)
        self._notified.pop(sandbox_id, None)

    async def _poll(self, sandbox_id: str, interval: float) -> None:
        while True:
            try:
                observation = await self.check(sandbox_id)
            except Exception:
                logger.exception("lifecycle poll failed for %s", sandbox_id)
            else:
                if observation.state is LifecycleState.EXPIRED:
                    return
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("stopped polling %s", self.active_sandbox_id)

    @property
    def is_watching(self) -> bool:
        return self._task is not None and not self._task.done()
