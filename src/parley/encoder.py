"""
Frame encoding and ordered chunk release.

FrameEncoder buffers captured frames and, on every flush, packs them into one
AudioChunk in the format declared at session start. ChunkSequencer releases
chunks strictly in sequence order even when compressed encodes finish out of
order on the executor.
"""
from __future__ import annotations

import asyncio
import base64
import io
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import soundfile as sf

from .audio_source import AudioFrame
from .error_handler import EncodeFailure, ErrorSeverity, handle_error
from .logging_utils import setup_logger

logger = setup_logger("parley.encoder", "logs/encoder.log")

_CONTAINER_FORMATS = {
    "flac": ("FLAC", "PCM_16"),
    "ogg": ("OGG", "VORBIS"),
}


@dataclass(frozen=True)
class AudioChunk:
    seq: int
    timestamp: float
    payload: bytes
    encoding: str
    sample_rate: int
    channels: int
    duration_ms: float

    def b64(self) -> str:
        """Text-safe payload for JSON transports."""
        return base64.b64encode(self.payload).decode("ascii")


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clip float samples to [-1, 1] and scale to int16."""
    clipped = np.clip(samples.astype(np.float32), -1.0, 1.0)
    return np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF).astype(np.int16)


class ChunkSequencer:
    """Releases chunks in strictly increasing seq order.

    ``submit(seq, None)`` marks a slot whose encode failed so later chunks are
    not held back behind it. ``when_released`` defers a callback until every
    slot below a given seq has been released or dropped.
    """

    def __init__(self, on_release: Callable[[AudioChunk], None]):
        self._on_release = on_release
        self._pending: Dict[int, Optional[AudioChunk]] = {}
        self.next_seq = 0
        self.released = 0
        self._waiters: List[Tuple[int, Callable[[], None]]] = []

    @property
    def backlog(self) -> int:
        return len(self._pending)

    def submit(self, seq: int, chunk: Optional[AudioChunk]) -> None:
        if seq < self.next_seq or seq in self._pending:
            logger.warning(f"Ignoring duplicate chunk slot {seq}")
            return
        self._pending[seq] = chunk
        while self.next_seq in self._pending:
            ready = self._pending.pop(self.next_seq)
            self.next_seq += 1
            if ready is not None:
                self.released += 1
                self._on_release(ready)
            self._notify_waiters()

    def when_released(self, upto: int, callback: Callable[[], None]) -> None:
        """Run ``callback`` once every seq below ``upto`` has left the sequencer."""
        if self.next_seq >= upto:
            callback()
            return
        self._waiters.append((upto, callback))

    def _notify_waiters(self) -> None:
        ready = [cb for upto, cb in self._waiters if upto <= self.next_seq]
        if not ready:
            return
        self._waiters = [(upto, cb) for upto, cb in self._waiters if upto > self.next_seq]
        for callback in ready:
            callback()

    def reset(self) -> None:
        self._pending.clear()
        self._waiters.clear()
        self.next_seq = 0
        self.released = 0


class FrameEncoder:
    """Packs captured frames into AudioChunks at a bounded cadence."""

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        on_chunk: Callable[[AudioChunk], None],
        encoding: str = "pcm16",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        if encoding != "pcm16" and encoding not in _CONTAINER_FORMATS:
            raise ValueError(f"Unsupported encoding: {encoding}")
        self.sample_rate = sample_rate
        self.channels = channels
        self.encoding = encoding
        self._loop = loop
        self._sequencer = ChunkSequencer(on_chunk)
        self._buffer: List[AudioFrame] = []
        self._next_seq = 0
        self._closed = False
        self.dropped = 0

    @property
    def buffered_frames(self) -> int:
        return len(self._buffer)

    @property
    def sequencer(self) -> ChunkSequencer:
        return self._sequencer

    def describe(self) -> Dict[str, object]:
        """Format metadata announced in session_start."""
        return {"sample_rate": self.sample_rate, "channels": self.channels, "encoding": self.encoding}

    def encode(self, frame: AudioFrame) -> AudioChunk:
        """Encode one frame into its own chunk. Raises EncodeFailure."""
        seq = self._reserve()
        try:
            chunk = self._build(seq, [frame])
        except EncodeFailure:
            self._sequencer.submit(seq, None)
            raise
        self._sequencer.submit(seq, chunk)
        return chunk

    def push(self, frame: AudioFrame) -> None:
        if self._closed:
            return
        if frame.sample_rate != self.sample_rate or frame.channels != self.channels:
            self._drop(EncodeFailure(
                f"frame format {frame.sample_rate} Hz/{frame.channels} ch does not match "
                f"session format {self.sample_rate} Hz/{self.channels} ch",
                component="encoder", operation="push",
            ))
            return
        self._buffer.append(frame)

    def flush(self) -> Optional[int]:
        """Encode everything buffered into one chunk; returns its seq or None."""
        if self._closed or not self._buffer:
            return None
        frames, self._buffer = self._buffer, []
        seq = self._reserve()

        if self.encoding != "pcm16" and self._loop is not None:
            future = self._loop.run_in_executor(None, self._build, seq, frames)
            future.add_done_callback(lambda fut, s=seq: self._on_encoded(s, fut))
            return seq

        try:
            chunk = self._build(seq, frames)
        except EncodeFailure as e:
            self._drop(e, seq)
            self._sequencer.submit(seq, None)
            return seq
        self._sequencer.submit(seq, chunk)
        return seq

    def close(self) -> None:
        self._closed = True
        self._buffer = []
        self._sequencer.reset()

    def when_flushed(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after every chunk flushed so far has been released.

        Compressed chunks finish on the executor, so this can fire well after
        flush() returns; with pcm16 it fires immediately.
        """
        self._sequencer.when_released(self._next_seq, callback)

    def _reserve(self) -> int:
        seq = self._next_seq
        self._next_seq += 1
        return seq

    def _on_encoded(self, seq: int, future: "asyncio.Future[AudioChunk]") -> None:
        if self._closed or future.cancelled():
            return
        error = future.exception()
        if error is not None:
            if not isinstance(error, EncodeFailure):
                error = EncodeFailure(str(error), component="encoder", operation="flush")
            self._drop(error, seq)
            self._sequencer.submit(seq, None)
            return
        self._sequencer.submit(seq, future.result())

    def _drop(self, error: EncodeFailure, seq: Optional[int] = None) -> None:
        self.dropped += 1
        metadata = {"seq": seq} if seq is not None else {}
        handle_error(error, "encoder", "encode", ErrorSeverity.LOW, metadata=metadata)

    def _build(self, seq: int, frames: List[AudioFrame]) -> AudioChunk:
        try:
            parts = [
                float_to_pcm16(f.samples) if f.samples.dtype.kind == "f" else f.samples.astype(np.int16)
                for f in frames
            ]
            samples = np.concatenate(parts) if parts else np.zeros(0, dtype=np.int16)
            if samples.size == 0 or samples.size % self.channels:
                raise EncodeFailure(f"chunk {seq} has {samples.size} samples for {self.channels} channel(s)",
                                    component="encoder", operation="encode")
            payload = self._pack(samples)
        except EncodeFailure:
            raise
        except Exception as e:
            raise EncodeFailure(f"chunk {seq} failed to encode: {e}",
                                component="encoder", operation="encode") from e

        frame_count = samples.size // self.channels
        return AudioChunk(
            seq=seq,
            timestamp=frames[0].timestamp,
            payload=payload,
            encoding=self.encoding,
            sample_rate=self.sample_rate,
            channels=self.channels,
            duration_ms=1000.0 * frame_count / self.sample_rate,
        )

    def _pack(self, samples: np.ndarray) -> bytes:
        if self.encoding == "pcm16":
            return samples.astype("<i2").tobytes()
        fmt, subtype = _CONTAINER_FORMATS[self.encoding]
        buf = io.BytesIO()
        sf.write(buf, samples.reshape(-1, self.channels), self.sample_rate, format=fmt, subtype=subtype)
        return buf.getvalue()


__all__ = ["AudioChunk", "ChunkSequencer", "FrameEncoder", "float_to_pcm16"]
