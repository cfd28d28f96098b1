import asyncio
from types import SimpleNamespace

import pytest

from titanlink.quality import (
    AdaptiveQualityController,
    NetworkQuality,
    quality_level,
    read_stats,
    score_quality,
)

TARGET = 10_000_000


def report(rtt_ms=20.0, jitter_ms=0.0, loss_pct=None, lost=None, received=None):
    """Stats in aiortc units: 90 kHz jitter ticks, 8-bit fractionLost."""
    stats = {
        "pair": SimpleNamespace(type="candidate-pair", state="succeeded", currentRoundTripTime=rtt_ms / 1000),
        "remote": SimpleNamespace(
            type="remote-inbound-rtp",
            kind="video",
            jitter=round(jitter_ms * 90),
            fractionLost=None if loss_pct is None else round(loss_pct * 256 / 100),
        ),
    }
    if lost is not None:
        stats["inbound"] = SimpleNamespace(type="inbound-rtp", kind="video", packetsLost=lost, packetsReceived=received, jitter=None)
    return stats


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Harness:
    def __init__(self, **kwargs):
        self.next_report = report()
        self.applied = []
        self.fail = False
        self.clock = FakeClock()
        self.controller = AdaptiveQualityController(
            stats_source=self.stats,
            apply_bitrate=self.apply,
            target_bitrate=TARGET,
            clock=self.clock,
            **kwargs,
        )

    async def stats(self):
        return self.next_report

    def apply(self, bitrate):
        if self.fail:
            raise RuntimeError("encoder gone")
        self.applied.append(bitrate)

    async def feed(self, rep, count):
        self.next_report = rep
        for _ in range(count):
            await self.controller.sample()


@pytest.mark.parametrize(
    "latency, loss, jitter, level",
    [
        (10, 0, 0, NetworkQuality.EXCELLENT),
        (70, 0, 0, NetworkQuality.GOOD),
        (70, 1, 20, NetworkQuality.FAIR),
        (200, 3, 40, NetworkQuality.POOR),
        (200, 10, 100, NetworkQuality.CRITICAL),
    ],
)
def test_quality_levels(latency, loss, jitter, level):
    assert quality_level(score_quality(latency, loss, jitter)) == level


def test_score_range():
    assert score_quality(0, 0, 0) == 0
    assert score_quality(1000, 100, 1000) == 9


def test_read_stats_extracts_metrics():
    sample = read_stats(report(rtt_ms=80, jitter_ms=12, lost=3, received=97))

    assert sample.rtt_ms == pytest.approx(80)
    assert sample.jitter_ms == pytest.approx(12)
    assert (sample.packets_lost, sample.packets_received) == (3, 97)
    assert sample.has_audio is False


def test_read_stats_converts_rtcp_units():
    sample = read_stats({
        "video": SimpleNamespace(type="remote-inbound-rtp", kind="video", roundTripTime=0.02, fractionLost=64, jitter=900),
        "audio": SimpleNamespace(type="remote-inbound-rtp", kind="audio", roundTripTime=0.02, fractionLost=0, jitter=480),
    })

    assert sample.rtt_ms == pytest.approx(20)
    assert sample.fraction_lost == pytest.approx(0.25)
    assert sample.jitter_ms == pytest.approx(10)
    assert sample.has_audio


@pytest.mark.asyncio
async def test_light_rtcp_loss_and_jitter_keep_target():
    h = Harness()
    clean = {
        "remote": SimpleNamespace(type="remote-inbound-rtp", kind="video", roundTripTime=0.02, fractionLost=1, jitter=9),
    }

    await h.feed(clean, 6)

    q = h.controller.quality
    assert q.packet_loss == pytest.approx(100 / 256)
    assert q.jitter == pytest.approx(0.1)
    assert q.network_quality == NetworkQuality.EXCELLENT
    assert h.applied == []


@pytest.mark.asyncio
async def test_latency_is_half_rtt():
    h = Harness()
    h.next_report = report(rtt_ms=100)

    q = await h.controller.sample()

    assert q.latency == pytest.approx(50)


@pytest.mark.asyncio
async def test_loss_uses_counter_deltas():
    h = Harness()
    await h.feed(report(lost=0, received=100), 1)
    assert h.controller.quality.packet_loss == 0

    await h.feed(report(lost=5, received=195), 1)
    # window holds 0% and 5%
    assert h.controller.quality.packet_loss == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_no_adjustment_until_window_full():
    h = Harness(window_size=6)
    degraded = report(rtt_ms=140)

    await h.feed(degraded, 5)
    assert h.applied == []
    assert not h.controller.window_full

    await h.feed(degraded, 1)
    assert h.applied == [int(TARGET * 0.85)]


@pytest.mark.asyncio
async def test_stable_samples_cause_one_adjustment_only():
    h = Harness()
    degraded = report(rtt_ms=140)

    for _ in range(30):
        h.clock.now += 0.5
        await h.feed(degraded, 1)

    assert h.applied == [int(TARGET * 0.85)]
    assert h.controller.quality.network_quality == NetworkQuality.GOOD


@pytest.mark.asyncio
async def test_excellent_network_keeps_target():
    h = Harness()
    await h.feed(report(rtt_ms=10), 20)

    assert h.applied == []
    assert h.controller.quality.current_bitrate == TARGET


@pytest.mark.asyncio
async def test_cooldown_blocks_second_adjustment():
    h = Harness(cooldown=5.0)
    await h.feed(report(rtt_ms=140), 6)
    assert len(h.applied) == 1

    h.clock.now = 1.0
    await h.feed(report(rtt_ms=400, jitter_ms=100, loss_pct=10), 6)
    assert h.controller.quality.network_quality == NetworkQuality.CRITICAL
    assert len(h.applied) == 1

    h.clock.now = 6.0
    await h.feed(report(rtt_ms=400, jitter_ms=100, loss_pct=10), 1)
    assert h.applied == [int(TARGET * 0.85), int(TARGET * 0.25)]


@pytest.mark.asyncio
async def test_small_changes_are_ignored():
    h = Harness(min_delta=2_000_000)
    await h.feed(report(rtt_ms=140), 10)

    assert h.applied == []


@pytest.mark.asyncio
async def test_encoder_failure_is_not_fatal():
    h = Harness()
    h.fail = True

    q = await h.controller.sample()
    await h.feed(report(rtt_ms=140), 6)

    assert q.current_bitrate == TARGET
    assert h.applied == []

    h.fail = False
    await h.feed(report(rtt_ms=140), 1)
    assert h.applied == [int(TARGET * 0.85)]


@pytest.mark.asyncio
async def test_disabling_adaptation_restores_target():
    h = Harness()
    await h.feed(report(rtt_ms=140), 6)
    assert h.controller.quality.current_bitrate == int(TARGET * 0.85)

    await h.controller.set_adaptive(False)

    assert h.applied[-1] == TARGET
    assert h.controller.quality.current_bitrate == TARGET

    await h.feed(report(rtt_ms=400, jitter_ms=100, loss_pct=10), 10)
    assert h.applied[-1] == TARGET


@pytest.mark.asyncio
async def test_async_bitrate_applier_is_awaited():
    applied = []

    async def apply(bitrate):
        applied.append(bitrate)

    async def stats():
        return report(rtt_ms=140)

    controller = AdaptiveQualityController(stats, apply, TARGET, clock=FakeClock())
    for _ in range(6):
        await controller.sample()

    assert applied == [int(TARGET * 0.85)]


@pytest.mark.asyncio
async def test_update_callback_and_loop():
    updates = []
    calls = 0

    async def stats():
        nonlocal calls
        calls += 1
        return report()

    controller = AdaptiveQualityController(
        stats, lambda b: None, TARGET, interval=0.01, on_update=updates.append
    )
    controller.start()
    assert controller.running
    await asyncio.sleep(0.1)
    await controller.stop()

    assert not controller.running
    assert calls >= 2
    assert len(updates) == calls


@pytest.mark.asyncio
async def test_sampling_survives_stats_errors():
    calls = 0

    async def stats():
        nonlocal calls
        calls += 1
        raise RuntimeError("transport closed")

    controller = AdaptiveQualityController(stats, lambda b: None, TARGET, interval=0.01)
    controller.start()
    await asyncio.sleep(0.05)
    await controller.stop()

    assert calls >= 2
