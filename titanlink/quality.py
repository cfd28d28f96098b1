"""
Adaptive quality control.

Samples transport statistics on a fixed cadence, scores the connection
and steers the outbound video bitrate. A bitrate change needs both a
minimum delta and an elapsed cooldown, which keeps noisy samples from
making the encoder oscillate.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class NetworkQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


# Ascending (good, fair, poor) thresholds per metric
LATENCY_THRESHOLDS_MS: Tuple[float, float, float] = (30.0, 60.0, 100.0)
PACKET_LOSS_THRESHOLDS_PCT: Tuple[float, float, float] = (0.5, 2.0, 5.0)
JITTER_THRESHOLDS_MS: Tuple[float, float, float] = (10.0, 30.0, 50.0)

BITRATE_MULTIPLIERS: Dict[NetworkQuality, float] = {
    NetworkQuality.EXCELLENT: 1.0,
    NetworkQuality.GOOD: 0.85,
    NetworkQuality.FAIR: 0.65,
    NetworkQuality.POOR: 0.45,
    NetworkQuality.CRITICAL: 0.25,
}


def metric_points(value: float, thresholds: Tuple[float, float, float]) -> int:
    """0 points at or under the good threshold, up to 3 above poor."""
    return sum(1 for limit in thresholds if value > limit)


def score_quality(latency_ms: float, packet_loss_pct: float, jitter_ms: float) -> int:
    """Summed 0-9 score, higher is worse."""
    return (
        metric_points(latency_ms, LATENCY_THRESHOLDS_MS)
        + metric_points(packet_loss_pct, PACKET_LOSS_THRESHOLDS_PCT)
        + metric_points(jitter_ms, JITTER_THRESHOLDS_MS)
    )


def quality_level(score: int) -> NetworkQuality:
    if score <= 1:
        return NetworkQuality.EXCELLENT
    if score <= 3:
        return NetworkQuality.GOOD
    if score <= 5:
        return NetworkQuality.FAIR
    if score <= 7:
        return NetworkQuality.POOR
    return NetworkQuality.CRITICAL


@dataclass
class ConnectionQuality:
    """Latest view of connection health; written only by the controller."""

    latency: float = 0.0
    packet_loss: float = 0.0
    jitter: float = 0.0
    has_audio: bool = False
    network_quality: NetworkQuality = NetworkQuality.GOOD
    current_bitrate: int = 0
    target_bitrate: int = 0


@dataclass
class StatsSample:
    """Raw numbers pulled out of one stats report."""

    rtt_ms: Optional[float] = None
    packets_lost: Optional[int] = None
    packets_received: Optional[int] = None
    fraction_lost: Optional[float] = None
    jitter_ms: Optional[float] = None
    has_audio: bool = False


# RTP clock rates of the streams aiortc sends (VP8/H264 video, Opus audio)
CLOCK_RATES: Dict[str, int] = {"video": 90000, "audio": 48000}


def jitter_to_ms(jitter: float, kind: Optional[str]) -> float:
    """Convert jitter from RTP timestamp units to milliseconds."""
    return jitter * 1000 / CLOCK_RATES.get(kind or "video", CLOCK_RATES["video"])


def read_stats(report: Any) -> StatsSample:
    """
    Extract RTT, loss counters and jitter from an aiortc stats report.

    aiortc reports values as they appear in RTCP: fractionLost is the
    8-bit fixed-point fraction (0-255) and jitter is in RTP timestamp
    units of the stream's clock.
    """
    sample = StatsSample()
    values = report.values() if hasattr(report, "values") else report

    for stat in values:
        kind = getattr(stat, "type", None)
        media = getattr(stat, "kind", None)

        if media == "audio":
            sample.has_audio = True

        if kind == "candidate-pair":
            rtt = getattr(stat, "currentRoundTripTime", None)
            if rtt is not None and getattr(stat, "state", "succeeded") == "succeeded":
                sample.rtt_ms = rtt * 1000

        elif kind == "remote-inbound-rtp":
            rtt = getattr(stat, "roundTripTime", None)
            if rtt is not None and sample.rtt_ms is None:
                sample.rtt_ms = rtt * 1000
            fraction = getattr(stat, "fractionLost", None)
            if fraction is not None:
                sample.fraction_lost = max(sample.fraction_lost or 0.0, fraction / 256)
            jitter = getattr(stat, "jitter", None)
            if jitter is not None:
                sample.jitter_ms = max(sample.jitter_ms or 0.0, jitter_to_ms(jitter, media))

        elif kind == "inbound-rtp":
            lost = getattr(stat, "packetsLost", None)
            received = getattr(stat, "packetsReceived", None)
            if lost is not None:
                sample.packets_lost = (sample.packets_lost or 0) + lost
            if received is not None:
                sample.packets_received = (sample.packets_received or 0) + received
            jitter = getattr(stat, "jitter", None)
            if jitter is not None:
                sample.jitter_ms = max(sample.jitter_ms or 0.0, jitter_to_ms(jitter, media))

    return sample


StatsSource = Callable[[], Awaitable[Any]]
BitrateApplier = Callable[[int], Any]


class AdaptiveQualityController:
    """
    Periodic sampler and bitrate policy for one peer connection.

    Args:
        stats_source: Coroutine function returning a stats report
        apply_bitrate: Callable (sync or async) setting the encoder bitrate
        target_bitrate: Configured bitrate in bits per second
        interval: Seconds between samples
        window_size: Samples per rolling window; no adjustment until full
        min_delta: Smallest bitrate change worth applying (bps)
        cooldown: Seconds between two adjustments
        adaptive: Start with adaptation enabled
        on_update: Called with the ConnectionQuality after every sample
    """

    def __init__(
        self,
        stats_source: StatsSource,
        apply_bitrate: BitrateApplier,
        target_bitrate: int,
        interval: float = 0.5,
        window_size: int = 6,
        min_delta: int = 250_000,
        cooldown: float = 5.0,
        adaptive: bool = True,
        on_update: Optional[Callable[[ConnectionQuality], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._stats_source = stats_source
        self._apply_bitrate = apply_bitrate
        self.interval = interval
        self.window_size = window_size
        self.min_delta = min_delta
        self.cooldown = cooldown
        self.adaptive = adaptive
        self.on_update = on_update
        self._clock = clock

        self.quality = ConnectionQuality(
            current_bitrate=target_bitrate,
            target_bitrate=target_bitrate,
        )

        self._latency: Deque[float] = deque(maxlen=window_size)
        self._loss: Deque[float] = deque(maxlen=window_size)
        self._jitter: Deque[float] = deque(maxlen=window_size)
        self._prev_counters: Optional[Tuple[int, int]] = None
        self._last_adjustment: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def window_full(self) -> bool:
        return len(self._latency) >= self.window_size

    def start(self) -> None:
        """Start the sampling loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug("Quality sampling started (every %.0f ms)", self.interval * 1000)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        # Each tick finishes before the next one is scheduled
        while True:
            try:
                await self.sample()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Quality sample failed")
            await asyncio.sleep(self.interval)

    async def sample(self) -> ConnectionQuality:
        """Take one sample and adjust the bitrate if the policy allows."""
        report = await self._stats_source()
        stats = read_stats(report)

        self._latency.append((stats.rtt_ms or 0.0) / 2)
        self._loss.append(self._loss_percent(stats))
        self._jitter.append(stats.jitter_ms or 0.0)

        q = self.quality
        q.latency = _mean(self._latency)
        q.packet_loss = _mean(self._loss)
        q.jitter = _mean(self._jitter)
        q.has_audio = q.has_audio or stats.has_audio

        if self.window_full:
            q.network_quality = quality_level(score_quality(q.latency, q.packet_loss, q.jitter))
            if self.adaptive:
                await self._adjust()

        if self.on_update:
            self.on_update(q)
        return q

    def _loss_percent(self, stats: StatsSample) -> float:
        if stats.packets_lost is None or stats.packets_received is None:
            if stats.fraction_lost is not None:
                return stats.fraction_lost * 100
            return 0.0

        counters = (stats.packets_lost, stats.packets_received)
        previous, self._prev_counters = self._prev_counters, counters
        if previous is None:
            return 0.0

        lost = max(0, counters[0] - previous[0])
        received = max(0, counters[1] - previous[1])
        total = lost + received
        return (lost / total) * 100 if total else 0.0

    async def _adjust(self) -> bool:
        q = self.quality
        new_bitrate = int(q.target_bitrate * BITRATE_MULTIPLIERS[q.network_quality])

        if abs(new_bitrate - q.current_bitrate) < self.min_delta:
            return False

        now = self._clock()
        if self._last_adjustment is not None and now - self._last_adjustment < self.cooldown:
            return False

        if not await self._set_encoder_bitrate(new_bitrate):
            return False

        logger.info(
            "Bitrate %d -> %d kbps (%s)",
            q.current_bitrate // 1000, new_bitrate // 1000, q.network_quality.value,
        )
        q.current_bitrate = new_bitrate
        self._last_adjustment = now
        return True

    async def _set_encoder_bitrate(self, bitrate: int) -> bool:
        try:
            result = self._apply_bitrate(bitrate)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Failed to apply encoder bitrate %d: %s", bitrate, e)
            return False
        return True

    async def set_adaptive(self, enabled: bool) -> None:
        """
        Toggle adaptation. Disabling restores the target bitrate at once.
        """
        self.adaptive = enabled
        q = self.quality
        if not enabled and q.current_bitrate != q.target_bitrate:
            if await self._set_encoder_bitrate(q.target_bitrate):
                q.current_bitrate = q.target_bitrate
                self._last_adjustment = self._clock()

    def set_target_bitrate(self, bitrate: int) -> None:
        """Change the configured bitrate; the next adjustment works from it."""
        self.quality.target_bitrate = bitrate


def _mean(values: Deque[float]) -> float:
    return sum(values) / len(values) if values else 0.0
