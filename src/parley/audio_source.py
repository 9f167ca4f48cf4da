"""
Parley microphone capture.

MicrophoneSource owns the capture device for a session. PortAudio delivers
blocks on its own thread; each block is wrapped as an AudioFrame and handed to
the event loop, so everything downstream runs on the loop thread only.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

try:
    import sounddevice as sd  # PortAudio bindings
except Exception:  # PortAudio shared library missing; open() reports DeviceUnavailable
    sd = None  # type: ignore

from .error_handler import DeviceUnavailable, PermissionDenied
from .logging_utils import setup_logger

logger = setup_logger("parley.audio_source", "logs/audio_source.log")

_PERMISSION_MARKERS = ("permission", "not authorized", "unauthorized", "access denied", "privacy")


@dataclass(frozen=True)
class AudioConstraints:
    sample_rate: int = 24000
    channels: int = 1
    block_ms: float = 20.0
    device: Optional[Union[int, str]] = None

    @property
    def block_size(self) -> int:
        return max(1, int(self.sample_rate * self.block_ms / 1000.0))


@dataclass(frozen=True)
class AudioFrame:
    """One captured block: interleaved int16 samples plus format and capture time."""
    samples: np.ndarray
    sample_rate: int
    channels: int
    timestamp: float

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.channels * self.sample_rate)

    def mono_float(self) -> np.ndarray:
        """Samples as float32 in [-1, 1], channels averaged."""
        data = self.samples.astype(np.float32) / 32768.0
        if self.channels > 1:
            data = data.reshape(-1, self.channels).mean(axis=1)
        return data


FrameCallback = Callable[[AudioFrame], None]


class AudioSource:
    """Base class for frame producers. Subclasses implement _open/_close."""

    def __init__(self) -> None:
        self.constraints: Optional[AudioConstraints] = None
        self._on_frame: Optional[FrameCallback] = None
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self, constraints: AudioConstraints, on_frame: FrameCallback) -> "AudioSource":
        if self._is_open:
            raise DeviceUnavailable("audio source already open", component="audio_source", operation="open")
        self.constraints = constraints
        self._on_frame = on_frame
        self._open(constraints)
        self._is_open = True
        logger.info(f"Audio source opened: {constraints.sample_rate} Hz, {constraints.channels} ch, "
                    f"{constraints.block_size} samples/block")
        return self

    def close(self) -> None:
        """Release the device. Safe to call any number of times."""
        if not self._is_open:
            return
        self._is_open = False
        self._on_frame = None
        try:
            self._close()
        finally:
            logger.info("Audio source closed")

    def __enter__(self) -> "AudioSource":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def _emit(self, frame: AudioFrame) -> None:
        callback = self._on_frame
        if callback is not None and self._is_open:
            callback(frame)

    def _open(self, constraints: AudioConstraints) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        raise NotImplementedError


class MicrophoneSource(AudioSource):
    """Captures int16 blocks from a PortAudio input device."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self._loop = loop
        self._stream = None
        self._frame_count = 0

    def _open(self, constraints: AudioConstraints) -> None:
        if sd is None:
            raise DeviceUnavailable("sounddevice/PortAudio is not available",
                                    component="audio_source", operation="open")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        device = constraints.device
        if isinstance(device, str) and device.isdigit():
            device = int(device)

        try:
            self._stream = sd.InputStream(
                samplerate=constraints.sample_rate,
                blocksize=constraints.block_size,
                dtype="int16",
                channels=constraints.channels,
                device=device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            message = str(e)
            if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
                raise PermissionDenied(f"Microphone access denied: {message}",
                                       component="audio_source", operation="open") from e
            raise DeviceUnavailable(f"Could not open input device {device!r}: {message}",
                                    component="audio_source", operation="open") from e

    def _close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.error(f"Error closing input stream: {e}")

    def _callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """PortAudio thread: copy the block and hop onto the event loop."""
        if status:
            logger.warning(f"PortAudio input status: {status}")
        constraints = self.constraints
        loop = self._loop
        if constraints is None or loop is None:
            return
        frame = AudioFrame(
            samples=np.array(indata, dtype=np.int16).reshape(-1),
            sample_rate=constraints.sample_rate,
            channels=constraints.channels,
            timestamp=time.monotonic(),
        )
        self._frame_count += 1
        if self._frame_count == 1:
            logger.info(f"First audio frame received ({frames} samples)")
        try:
            loop.call_soon_threadsafe(self._emit, frame)
        except RuntimeError:
            # Loop already closed during teardown
            pass


def list_devices() -> str:
    """Human-readable list of PortAudio devices."""
    if sd is None:
        raise DeviceUnavailable("sounddevice/PortAudio is not available",
                                component="audio_source", operation="list_devices")
    return str(sd.query_devices())


__all__ = [
    "AudioConstraints",
    "AudioFrame",
    "AudioSource",
    "MicrophoneSource",
    "FrameCallback",
    "list_devices",
]
