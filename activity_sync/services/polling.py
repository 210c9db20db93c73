"""
Activity-aware polling.

``PollingController`` is a pure state machine fed with explicit timestamps,
so it can be driven by a real clock or by a test. ``AdaptivePoller`` runs a
fetch coroutine on asyncio at whatever interval the controller currently
asks for.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class PollingState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class PollingTier:
    """Interval bundle in seconds. ``inactive_interval`` of 0 stops polling."""

    name: str
    active_interval: float
    inactive_interval: float
    max_inactive_time: float
    inactivity_threshold: float


TIERS: Dict[str, PollingTier] = {
    tier.name: tier
    for tier in (
        PollingTier("realtime", 30, 120, 1800, 300),
        PollingTier("analytics", 60, 300, 1800, 300),
        PollingTier("background", 300, 0, 900, 180),
        PollingTier("passive", 900, 0, 600, 120),
    )
}


def get_tier(name: str) -> PollingTier:
    try:
        return TIERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown polling tier '{name}'. Expected one of: {', '.join(TIERS)}"
        ) from None


@dataclass(frozen=True)
class PollDecision:
    state: PollingState
    interval: Optional[float]
    fetch_now: bool = False


class PollingController:
    def __init__(self, tier: PollingTier, *, now: float, visible: bool = True) -> None:
        self.tier = tier
        self._visible = visible
        self._last_interaction = now
        self._state = PollingState.ACTIVE if visible else PollingState.SUSPENDED
        self.transitions: List[Tuple[float, PollingState, PollingState]] = []

    @property
    def state(self) -> PollingState:
        return self._state

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def interval(self) -> Optional[float]:
        """Seconds until the next fetch, or None while suspended."""
        if self._state == PollingState.ACTIVE:
            return self.tier.active_interval
        if self._state == PollingState.INACTIVE:
            return self.tier.inactive_interval
        return None

    def record_interaction(self, now: float) -> PollDecision:
        self._last_interaction = now
        if not self._visible:
            return self._decision()
        return self._resume(now)

    def set_visibility(self, visible: bool, now: float) -> PollDecision:
        self._visible = visible
        if not visible:
            self._move(PollingState.SUSPENDED, now)
            return self._decision()
        self._last_interaction = now
        return self._resume(now)

    def tick(self, now: float) -> PollDecision:
        """Re-evaluate idle time; never resumes on its own."""
        if self._state == PollingState.SUSPENDED:
            return self._decision()

        idle = now - self._last_interaction
        if idle >= self.tier.max_inactive_time:
            self._move(PollingState.SUSPENDED, now)
        elif idle >= self.tier.inactivity_threshold:
            if self.tier.inactive_interval > 0:
                self._move(PollingState.INACTIVE, now)
            else:
                self._move(PollingState.SUSPENDED, now)
        return self._decision()

    def _resume(self, now: float) -> PollDecision:
        resumed = self._state != PollingState.ACTIVE
        self._move(PollingState.ACTIVE, now)
        return self._decision(fetch_now=resumed)

    def _move(self, state: PollingState, now: float) -> None:
        if state != self._state:
            self.transitions.append((now, self._state, state))
            logger.debug(
                "Polling tier %s: %s -> %s", self.tier.name, self._state.value, state.value
            )
            self._state = state

    def _decision(self, fetch_now: bool = False) -> PollDecision:
        return PollDecision(state=self._state, interval=self.interval, fetch_now=fetch_now)


class AdaptivePoller:
    """Call ``fetch`` on the cadence chosen by a ``PollingController``."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[None]],
        tier: PollingTier,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self.controller = PollingController(tier, now=clock())
        self._wake = asyncio.Event()
        self._fetch_pending = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, *, immediate: bool = True) -> None:
        if self.running:
            return
        self._fetch_pending = immediate
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def record_interaction(self) -> PollDecision:
        return self._apply(self.controller.record_interaction(self._clock()))

    def set_visibility(self, visible: bool) -> PollDecision:
        return self._apply(self.controller.set_visibility(visible, self._clock()))

    def _apply(self, decision: PollDecision) -> PollDecision:
        if decision.state == PollingState.SUSPENDED:
            self._fetch_pending = False
            self._wake.set()
        elif decision.fetch_now:
            self._fetch_pending = True
            self._wake.set()
        return decision

    async def _run(self) -> None:
        while True:
            # Cleared before the pending check so a wake raised mid-fetch survives.
            self._wake.clear()
            if self._fetch_pending:
                self._fetch_pending = False
                await self._fetch_once()

            decision = self.controller.tick(self._clock())
            if decision.interval is None:
                await self._wake.wait()
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=decision.interval)
            except asyncio.TimeoutError:
                due = self.controller.tick(self._clock())
                self._fetch_pending = due.interval is not None

    async def _fetch_once(self) -> None:
        try:
            await self._fetch()
        except Exception:
            logger.exception("Polling fetch failed")


__all__ = [
    "AdaptivePoller",
    "PollDecision",
    "PollingController",
    "PollingState",
    "PollingTier",
    "TIERS",
    "get_tier",
]
