"""
Local media for the host: screen capture as a WebRTC video track, plus
optional audio from a capture device.
"""

import asyncio
import fractions
import logging
import time
from dataclasses import dataclass
from typing import Optional

import av
import mss
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)

VIDEO_CLOCK_RATE = 90000
VIDEO_TIME_BASE = fractions.Fraction(1, VIDEO_CLOCK_RATE)


class ScreenCaptureTrack(VideoStreamTrack):
    """
    Video track that grabs one monitor with mss.

    Frames are paced to the configured fps and tagged as motion content,
    so encoders favour frame rate over sharpness.
    """

    def __init__(self, monitor: int = 1, fps: int = 60):
        """
        Args:
            monitor: Monitor index (0 = all monitors combined, 1+ = specific monitor)
            fps: Target frame rate
        """
        super().__init__()
        self.monitor_index = monitor
        self.fps = max(1, fps)
        self.content_hint = "motion"

        # Reused for every frame
        self._sct = mss.mss()
        self._update_monitor_info()

        self._started_at: Optional[float] = None
        self._timestamp = 0

    def _update_monitor_info(self) -> None:
        monitors = self._sct.monitors

        # Monitor 0 is the combined virtual screen, 1+ are individual monitors
        if self.monitor_index < len(monitors):
            mon = monitors[self.monitor_index]
        else:
            mon = monitors[1] if len(monitors) > 1 else monitors[0]

        self._monitor = mon
        self._width = mon["width"]
        self._height = mon["height"]

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    async def _next_timestamp(self) -> int:
        if self._started_at is None:
            self._started_at = time.time()
            self._timestamp = 0
        else:
            self._timestamp += int(VIDEO_CLOCK_RATE / self.fps)
            wait = self._started_at + (self._timestamp / VIDEO_CLOCK_RATE) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        return self._timestamp

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live" or self._sct is None:
            raise MediaStreamError

        pts = await self._next_timestamp()

        # Raw BGRA pixels, height x width x 4
        shot = self._sct.grab(self._monitor)
        pixels = np.asarray(shot, dtype=np.uint8)

        frame = av.VideoFrame.from_ndarray(pixels, format="bgra")
        frame.pts = pts
        frame.time_base = VIDEO_TIME_BASE
        return frame

    def stop(self) -> None:
        super().stop()
        if self._sct:
            self._sct.close()
            self._sct = None


@dataclass
class LocalMedia:
    """Tracks the host attaches to its peer connection."""

    video: MediaStreamTrack
    audio: Optional[MediaStreamTrack] = None
    player: Optional[MediaPlayer] = None

    def stop(self) -> None:
        self.video.stop()
        if self.audio is not None:
            self.audio.stop()


def open_audio(device: str, fmt: str = "") -> Optional[MediaPlayer]:
    """
    Open an audio capture device through FFmpeg.

    Returns:
        The player, or None if the device could not be opened or has no
        audio stream
    """
    try:
        player = MediaPlayer(device, format=fmt or None)
    except (av.FFmpegError, OSError) as e:
        logger.warning("Audio capture unavailable (%s): %s", device, e)
        return None

    if player.audio is None:
        logger.warning("Audio device %s has no audio stream", device)
        return None
    return player


def open_media(config) -> LocalMedia:
    """Build the host's local media from the stream settings."""
    video = ScreenCaptureTrack(monitor=config.monitor, fps=config.fps)
    logger.info("Capturing monitor %d at %dx%d, %d fps", config.monitor, video.width, video.height, video.fps)

    player = None
    if config.audio_device:
        player = open_audio(config.audio_device, config.audio_format)

    return LocalMedia(
        video=video,
        audio=player.audio if player else None,
        player=player,
    )
