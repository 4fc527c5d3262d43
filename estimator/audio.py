"""Audio plumbing for voice sessions.

This module provides:
- PCM16 <-> float conversion and resampling
- CapturePipeline: microphone frames -> PCM16 -> live session, in capture order
- PlaybackScheduler: live session audio -> gapless, back-to-back playback
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
from loguru import logger
from scipy import signal as scipy_signal

from estimator.config import CAPTURE_SAMPLE_RATE, PLAYBACK_SAMPLE_RATE

PCM16_SCALE = 32768.0

# =============================================================================
# Conversion
# =============================================================================


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1.0, 1.0] to little-endian 16-bit PCM.

    Samples are scaled by 32768 and truncated toward zero; full-scale
    positive input is clipped to 32767.
    """
    scaled = np.trunc(np.asarray(samples, dtype=np.float64) * PCM16_SCALE)
    return np.clip(scaled, -32768, 32767).astype("<i2").tobytes()


def pcm16_to_float(pcm_data: bytes) -> np.ndarray:
    """Convert little-endian 16-bit PCM to float32 samples in [-1.0, 1.0)."""
    samples = np.frombuffer(pcm_data, dtype="<i2").astype(np.float32)
    return samples / np.float32(PCM16_SCALE)


def resample(samples: np.ndarray, input_rate: int, output_rate: int) -> np.ndarray:
    """Resample float audio from one sample rate to another."""
    if input_rate == output_rate or len(samples) == 0:
        return np.asarray(samples, dtype=np.float32)

    new_length = int(len(samples) * output_rate / input_rate)
    resampled = scipy_signal.resample(np.asarray(samples, dtype=np.float64), new_length)
    return np.clip(resampled, -1.0, 1.0).astype(np.float32)


# =============================================================================
# Frames
# =============================================================================


@dataclass(frozen=True)
class AudioFrame:
    """Float samples plus their capture time or scheduled playback time.

    ``samples`` is made read-only: once a frame leaves the stage that built
    it, nobody writes to it.
    """

    samples: np.ndarray
    sample_rate: int
    channels: int = 1
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        self.samples.flags.writeable = False

    @property
    def duration(self) -> float:
        return self.samples.size / (self.sample_rate * self.channels)


@dataclass(frozen=True)
class EncodedFrame:
    """A captured frame in transmissible form."""

    pcm: bytes
    sample_rate: int = CAPTURE_SAMPLE_RATE
    captured_at: float = 0.0

    @property
    def data(self) -> str:
        return base64.b64encode(self.pcm).decode("utf-8")

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"


# =============================================================================
# Collaborators
# =============================================================================


class AudioClock(Protocol):
    def now(self) -> float: ...


class LoopClock:
    """Monotonic audio clock; the same clock asyncio's default loop uses for timers."""

    def now(self) -> float:
        return time.monotonic()


class AudioSource(Protocol):
    """A microphone-like input of float frames at the capture rate."""

    async def open(self) -> None:
        """Acquire the device; raise PermissionDenied if access is refused."""

    def frames(self) -> AsyncIterator[np.ndarray]: ...

    async def close(self) -> None: ...


class AudioSink(Protocol):
    """A speaker-like output that plays frames at their timestamp."""

    async def play(self, frame: AudioFrame) -> None: ...

    async def clear(self) -> None: ...


# =============================================================================
# Capture
# =============================================================================


class CapturePipeline:
    """Encodes microphone frames and hands them to the transport in order.

    A producer task reads the source and encodes; a consumer task drains a
    bounded queue into ``transport``. ``stop()`` is synchronous and nothing
    reaches the transport after it returns.
    """

    def __init__(
        self,
        source: AudioSource,
        transport: Callable[[EncodedFrame], Awaitable[Any]],
        sample_rate: int = CAPTURE_SAMPLE_RATE,
        clock: AudioClock | None = None,
        max_pending: int = 8,
    ):
        self._source = source
        self._transport = transport
        self._sample_rate = sample_rate
        self._clock = clock or LoopClock()
        self._queue: asyncio.Queue[EncodedFrame | None] = asyncio.Queue(maxsize=max_pending)
        self._running = False
        self.frames_sent = 0

    @property
    def running(self) -> bool:
        return self._running

    def encode(self, samples: np.ndarray) -> EncodedFrame:
        return EncodedFrame(
            pcm=float_to_pcm16(samples),
            sample_rate=self._sample_rate,
            captured_at=self._clock.now(),
        )

    async def run(self) -> None:
        """Capture and transmit until the source ends or ``stop()`` is called."""
        self._running = True
        capture = asyncio.create_task(self._capture(), name="capture")
        try:
            await self._transmit()
            if self._running:
                await capture  # source ended; surfaces its error, if any
        finally:
            self._running = False
            if not capture.done():
                capture.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await capture
            logger.debug(f"Capture pipeline finished after {self.frames_sent} frames")

    def stop(self) -> None:
        """Stop emitting immediately and drop frames not yet transmitted."""
        self._running = False
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def _capture(self) -> None:
        try:
            async for samples in self._source.frames():
                if not self._running:
                    break
                await self._queue.put(self.encode(samples))
        finally:
            if self._running:
                await self._queue.put(None)

    async def _transmit(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None or not self._running:
                return
            await self._transport(frame)
            self.frames_sent += 1


# =============================================================================
# Playback
# =============================================================================


@dataclass(eq=False)
class PlaybackHandle:
    frame: AudioFrame
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def start(self) -> float:
        return self.frame.timestamp

    @property
    def end(self) -> float:
        return self.frame.timestamp + self.frame.duration


class PlaybackScheduler:
    """Schedules synthesized speech so frames play back to back.

    Each frame starts at ``max(next_start_time, now)`` and pushes the cursor
    forward by its duration, so bursty or jittery arrival never causes
    overlap or gaps as long as frames arrive in order.
    """

    def __init__(
        self,
        sink: AudioSink,
        sample_rate: int = PLAYBACK_SAMPLE_RATE,
        channels: int = 1,
        clock: AudioClock | None = None,
        on_speaking: Callable[[bool], Any] | None = None,
    ):
        self._sink = sink
        self._sample_rate = sample_rate
        self._channels = channels
        self._clock = clock or LoopClock()
        self._on_speaking = on_speaking
        self._lock = asyncio.Lock()
        self._handles: set[PlaybackHandle] = set()
        self._speaking = False
        self.next_start_time: float | None = self._clock.now()

    @property
    def is_speaking(self) -> bool:
        return bool(self._handles)

    @property
    def in_flight(self) -> int:
        return len(self._handles)

    def reset(self) -> None:
        """Start a fresh timeline at the current clock time."""
        self.next_start_time = self._clock.now()

    def decode(self, data: bytes | str, timestamp: float = 0.0) -> AudioFrame:
        pcm = base64.b64decode(data) if isinstance(data, str) else data
        return AudioFrame(
            samples=pcm16_to_float(pcm),
            sample_rate=self._sample_rate,
            channels=self._channels,
            timestamp=timestamp,
        )

    async def schedule(self, data: bytes | str) -> PlaybackHandle | None:
        """Decode one inbound frame and queue it right after the previous one."""
        async with self._lock:
            frame = self.decode(data)
            if frame.samples.size == 0:
                return None

            now = self._clock.now()
            start = now if self.next_start_time is None else max(self.next_start_time, now)
            frame = AudioFrame(frame.samples, frame.sample_rate, frame.channels, timestamp=start)
            self.next_start_time = start + frame.duration

            handle = PlaybackHandle(frame)
            self._handles.add(handle)
            self._set_speaking(True)

            try:
                await self._sink.play(frame)
            except BaseException:
                self._finished(handle)
                raise
            if handle not in self._handles:
                return None  # cancelled while the sink was busy

            delay = max(0.0, handle.end - self._clock.now())
            handle.timer = asyncio.get_running_loop().call_later(delay, self._finished, handle)
            return handle

    async def cancel(self) -> None:
        """Halt everything scheduled or playing."""
        for handle in self._handles:
            if handle.timer:
                handle.timer.cancel()
        self._handles.clear()
        self.next_start_time = None
        self._set_speaking(False)
        await self._sink.clear()

    def _finished(self, handle: PlaybackHandle) -> None:
        if handle not in self._handles:
            return
        self._handles.discard(handle)
        if not self._handles:
            self._set_speaking(False)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        if self._on_speaking:
            self._on_speaking(speaking)
