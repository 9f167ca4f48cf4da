"""
Parley response playback with hard-stop interruption.

ResponsePlayer keeps one ResponseStream (the current assistant turn's audio)
and plays its chunks strictly in arrival order through an AudioSink. stop()
halts the sink immediately and discards whatever is still queued; it is what
barge-in calls.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Union

import numpy as np
import soundfile as sf

try:
    import sounddevice as sd  # PortAudio bindings
except Exception:  # PortAudio shared library missing; playback reports DeviceUnavailable
    sd = None  # type: ignore

from .error_handler import DeviceUnavailable, ErrorSeverity, PlaybackDecodeFailure, handle_error
from .logging_utils import setup_logger

logger = setup_logger("parley.player", "logs/player.log")

_CONTAINER_MAGIC = (b"RIFF", b"OggS", b"fLaC", b"ID3", b"\xff\xfb", b"\xff\xf3", b"\xff\xf2")

_turn_ids = itertools.count(1)


class AudioSink(Protocol):
    """Output device seam: play one buffer, resolve when it has finished."""

    def play(self, samples: np.ndarray, sample_rate: int) -> Awaitable[None]:
        ...

    def abort(self) -> None:
        ...


@dataclass
class ResponseStream:
    turn_id: int
    pending: Deque[bytes] = field(default_factory=deque)
    played: int = 0
    failed: int = 0
    complete: bool = False

    @property
    def cursor(self) -> int:
        """Index of the next chunk to play within the turn."""
        return self.played + self.failed


def decode_chunk(chunk: Union[bytes, str], encoding: str = "pcm16") -> tuple:
    """Decode one response chunk into (float32 mono samples, sample_rate or None).

    ``encoding`` is ``pcm16`` (raw little-endian int16, optionally base64 text),
    ``container`` (anything soundfile reads) or ``auto`` (sniff the header).
    """
    if isinstance(chunk, str):
        try:
            chunk = base64.b64decode(chunk, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PlaybackDecodeFailure(f"invalid base64 audio: {e}", component="player", operation="decode") from e

    if not chunk:
        raise PlaybackDecodeFailure("empty audio chunk", component="player", operation="decode")

    if encoding == "auto":
        encoding = "container" if chunk.startswith(_CONTAINER_MAGIC) else "pcm16"

    if encoding == "pcm16":
        if len(chunk) % 2:
            raise PlaybackDecodeFailure(f"PCM16 chunk has odd length {len(chunk)}",
                                        component="player", operation="decode")
        pcm = np.frombuffer(chunk, dtype="<i2")
        return pcm.astype(np.float32) / 32768.0, None

    try:
        data, rate = sf.read(io.BytesIO(chunk), dtype="float32", always_2d=True)
    except Exception as e:
        raise PlaybackDecodeFailure(f"could not decode audio container: {e}",
                                    component="player", operation="decode") from e
    return data.mean(axis=1).astype(np.float32), int(rate)


class ResponsePlayer:
    """Ordered, interruptible queue for streamed response audio."""

    def __init__(self, sink: AudioSink, sample_rate: int = 24000, encoding: str = "pcm16"):
        self.sink = sink
        self.sample_rate = sample_rate
        self.encoding = encoding
        self.stream: Optional[ResponseStream] = None
        self._task: Optional[asyncio.Task] = None
        self._drained_callbacks: List[Callable[[ResponseStream], None]] = []
        self.decode_failures = 0
        self.stops = 0

    @property
    def queue_length(self) -> int:
        return len(self.stream.pending) if self.stream is not None else 0

    @property
    def is_playing(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_active(self) -> bool:
        return self.stream is not None

    def on_drained(self, handler: Callable[[ResponseStream], None]) -> None:
        self._drained_callbacks.append(handler)

    def enqueue(self, chunk: bytes) -> ResponseStream:
        """Append a chunk to the current turn, opening a ResponseStream if needed."""
        if self.stream is None:
            self.stream = ResponseStream(turn_id=next(_turn_ids))
            logger.info(f"Response stream {self.stream.turn_id} opened")
        self.stream.pending.append(chunk)
        if not self.is_playing:
            self._task = asyncio.get_running_loop().create_task(self._pump(self.stream))
        return self.stream

    def mark_complete(self) -> None:
        """The remote finished sending this turn; drain fires once the queue empties."""
        stream = self.stream
        if stream is None:
            return
        stream.complete = True
        if not stream.pending and not self.is_playing:
            self._finish(stream)

    def stop(self) -> bool:
        """Hard stop: halt output now and discard the rest of the turn.

        Safe with nothing queued and when called repeatedly; returns True only
        if something was actually stopped.
        """
        stream = self.stream
        task = self._task
        if stream is None and task is None:
            return False
        self.stream = None
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        try:
            self.sink.abort()
        except Exception as e:
            logger.error(f"Error aborting audio output: {e}")
        self.stops += 1
        if stream is not None:
            logger.info(f"Response stream {stream.turn_id} stopped with {len(stream.pending)} chunk(s) discarded")
            stream.pending.clear()
        return True

    async def _pump(self, stream: ResponseStream) -> None:
        while self.stream is stream and stream.pending:
            chunk = stream.pending.popleft()
            try:
                samples, rate = decode_chunk(chunk, self.encoding)
            except PlaybackDecodeFailure as e:
                stream.failed += 1
                self.decode_failures += 1
                handle_error(e, "player", "decode", ErrorSeverity.LOW, metadata={"turn_id": stream.turn_id})
                continue
            try:
                await self.sink.play(samples, rate or self.sample_rate)
            except DeviceUnavailable as e:
                stream.failed += 1
                handle_error(e, "player", "play", ErrorSeverity.HIGH, metadata={"turn_id": stream.turn_id})
                continue
            stream.played += 1

        if self.stream is stream:
            self._task = None
            if stream.complete:
                self._finish(stream)

    def _finish(self, stream: ResponseStream) -> None:
        if self.stream is not stream:
            return
        self.stream = None
        logger.info(f"Response stream {stream.turn_id} drained ({stream.played} played, {stream.failed} skipped)")
        for callback in list(self._drained_callbacks):
            try:
                callback(stream)
            except Exception as e:
                logger.error(f"Drained callback error: {e}")

    def get_playback_status(self) -> dict:
        return {
            'is_playing': self.is_playing,
            'turn_id': self.stream.turn_id if self.stream else None,
            'queue_length': self.queue_length,
            'decode_failures': self.decode_failures,
            'stops': self.stops,
        }


class SoundDeviceSink:
    """Plays buffers through a sounddevice OutputStream, one stream per buffer."""

    def __init__(self, output_device=None, blocksize_sec: float = 0.05):
        self.output_device = output_device
        self.blocksize_sec = blocksize_sec
        self._stream = None
        self._buffer = np.zeros(0, dtype=np.float32)

    def play(self, samples: np.ndarray, sample_rate: int) -> "asyncio.Future[None]":
        if sd is None:
            raise DeviceUnavailable("sounddevice/PortAudio is not available", component="player", operation="play")
        self._release_stream(abort=False)
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        self._buffer = np.asarray(samples, dtype=np.float32)
        opened: List = []

        def finished() -> None:
            loop.call_soon_threadsafe(self._on_finished, opened[0] if opened else None, done)

        try:
            stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=int(sample_rate * self.blocksize_sec),
                callback=self._audio_callback,
                finished_callback=finished,
                device=self.output_device,
            )
            opened.append(stream)
            self._stream = stream
            stream.start()
        except Exception as e:
            self._release_stream(abort=True)
            raise DeviceUnavailable(f"could not open output device: {e}", component="player", operation="play") from e
        return done

    def abort(self) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)
        self._release_stream(abort=True)

    def _on_finished(self, stream, done: "asyncio.Future[None]") -> None:
        """Loop thread: a stream ran dry. Close it unless abort() already did."""
        if stream is not None and stream is self._stream:
            self._release_stream(abort=False)
        _resolve(done)

    def _release_stream(self, abort: bool) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            if abort:
                stream.abort()
            stream.close()
        except Exception as e:
            logger.error(f"Error stopping audio stream: {e}")

    def _audio_callback(self, outdata: np.ndarray, frames: int, time_info, status) -> None:
        """PortAudio thread: copy the next block out of the buffer"""
        chunk = self._buffer[:frames]
        self._buffer = self._buffer[frames:]
        outdata.fill(0)
        outdata[:len(chunk), 0] = chunk
        if len(chunk) < frames:
            raise sd.CallbackStop


def _resolve(future: "asyncio.Future[None]") -> None:
    if not future.done():
        future.set_result(None)


__all__ = [
    "AudioSink",
    "ResponseStream",
    "ResponsePlayer",
    "SoundDeviceSink",
    "decode_chunk",
]
