from __future__ import annotations

import asyncio

import pytest

from activity_sync.services.polling import (
    TIERS,
    AdaptivePoller,
    PollingController,
    PollingState,
    PollingTier,
    get_tier,
)


def test_tier_table() -> None:
    assert {
        name: (t.active_interval, t.inactive_interval, t.max_inactive_time, t.inactivity_threshold)
        for name, t in TIERS.items()
    } == {
        "realtime": (30, 120, 1800, 300),
        "analytics": (60, 300, 1800, 300),
        "background": (300, 0, 900, 180),
        "passive": (900, 0, 600, 120),
    }


def test_realtime_switches_to_inactive_interval_once_at_five_minutes() -> None:
    controller = PollingController(TIERS["realtime"], now=0)

    intervals = [controller.tick(float(second)).interval for second in range(0, 361)]

    changes = [
        (second, intervals[second - 1], intervals[second])
        for second in range(1, len(intervals))
        if intervals[second] != intervals[second - 1]
    ]
    assert changes == [(300, 30, 120)]
    assert controller.transitions == [(300.0, PollingState.ACTIVE, PollingState.INACTIVE)]


def test_hidden_tab_suspends_immediately_and_resumes_with_fetch() -> None:
    controller = PollingController(TIERS["realtime"], now=0)

    hidden = controller.set_visibility(False, now=10)
    assert hidden.state == PollingState.SUSPENDED
    assert hidden.interval is None
    assert controller.tick(400).state == PollingState.SUSPENDED

    shown = controller.set_visibility(True, now=500)
    assert shown.fetch_now is True
    assert shown.state == PollingState.ACTIVE
    assert shown.interval == 30


def test_interaction_while_hidden_does_not_resume() -> None:
    controller = PollingController(TIERS["realtime"], now=0)
    controller.set_visibility(False, now=1)

    decision = controller.record_interaction(now=2)

    assert decision.state == PollingState.SUSPENDED
    assert decision.fetch_now is False


def test_inactive_past_max_time_suspends_then_interaction_resumes() -> None:
    controller = PollingController(TIERS["realtime"], now=0)

    assert controller.tick(600).state == PollingState.INACTIVE
    assert controller.tick(1800).state == PollingState.SUSPENDED

    resumed = controller.record_interaction(now=1900)
    assert resumed.fetch_now is True
    assert resumed.interval == 30


def test_zero_inactive_interval_stops_polling_at_threshold() -> None:
    controller = PollingController(TIERS["background"], now=0)

    assert controller.tick(179).interval == 300
    decision = controller.tick(180)

    assert decision.state == PollingState.SUSPENDED
    assert decision.interval is None


def test_interaction_while_active_does_not_request_extra_fetch() -> None:
    controller = PollingController(TIERS["analytics"], now=0)

    decision = controller.record_interaction(now=100)

    assert decision.fetch_now is False
    assert controller.tick(350).state == PollingState.ACTIVE


def test_unknown_tier_rejected() -> None:
    with pytest.raises(ValueError):
        get_tier("hyperspeed")


@pytest.mark.asyncio
async def test_adaptive_poller_stops_when_hidden_and_refetches_on_show() -> None:
    tier = PollingTier("test", active_interval=0.01, inactive_interval=0.02,
                       max_inactive_time=60, inactivity_threshold=30)
    fetches: list[int] = []

    async def fetch() -> None:
        fetches.append(len(fetches))

    poller = AdaptivePoller(fetch, tier)
    poller.start()
    await asyncio.sleep(0.06)
    assert len(fetches) >= 2

    poller.set_visibility(False)
    await asyncio.sleep(0)
    hidden_count = len(fetches)
    await asyncio.sleep(0.05)
    assert len(fetches) == hidden_count

    decision = poller.set_visibility(True)
    assert decision.fetch_now is True
    await asyncio.sleep(0.005)
    assert len(fetches) >= hidden_count + 1

    await poller.stop()
    assert poller.running is False
    stopped_count = len(fetches)
    await asyncio.sleep(0.03)
    assert len(fetches) == stopped_count


@pytest.mark.asyncio
async def test_adaptive_poller_survives_failing_fetch() -> None:
    tier = PollingTier("test", 0.01, 0.02, 60, 30)
    attempts = 0

    async def fetch() -> None:
        nonlocal attempts
        attempts += 1
        raise RuntimeError("boom")

    poller = AdaptivePoller(fetch, tier)
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert attempts >= 2


@pytest.mark.asyncio
async def test_interaction_during_fetch_triggers_immediate_refetch() -> None:
    class Clock:
        now = 0.0

        def __call__(self) -> float:
            return self.now

    clock = Clock()
    tier = PollingTier("test", active_interval=5, inactive_interval=0.05,
                       max_inactive_time=60, inactivity_threshold=10)
    fetches: list[int] = []
    in_second = asyncio.Event()
    release = asyncio.Event()

    async def fetch() -> None:
        fetches.append(len(fetches))
        if len(fetches) == 2:
            in_second.set()
            await release.wait()

    poller = AdaptivePoller(fetch, tier, clock=clock)
    clock.now = 20.0
    poller.start()
    await asyncio.wait_for(in_second.wait(), timeout=1)

    decision = poller.record_interaction()
    assert decision.fetch_now is True
    assert decision.state == PollingState.ACTIVE

    release.set()
    await asyncio.sleep(0.05)
    assert len(fetches) >= 3

    await poller.stop()
