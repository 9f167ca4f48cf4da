import asyncio
import os
import sys
import tempfile

import numpy as np
import pytest

# Keep test runs from writing into ./logs
os.environ.setdefault("PARLEY_LOG_DIR", tempfile.mkdtemp(prefix="parley-logs-"))

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from parley.audio_source import AudioFrame, AudioSource
from parley.config import TransportSettings
from parley.error_handler import TransportError
from parley.transport import Transport

SAMPLE_RATE = 24000
FRAME_MS = 20


class FakeTimer:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manually advanced clock; timers fire in due order inside advance()"""

    def __init__(self, start=0.0):
        self.time = start
        self._timers = []

    def now(self):
        return self.time

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.time + max(0.0, delay), callback, args)
        self._timers.append(timer)
        return timer

    def call_soon(self, callback, *args):
        return self.call_later(0.0, callback, *args)

    @property
    def pending(self):
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds):
        target = self.time + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.time = max(self.time, timer.when)
            timer.callback(*timer.args)
        self._timers = [t for t in self._timers if not t.cancelled]
        self.time = target


class FakeSink:
    """AudioSink that finishes a buffer only when the test says so (or at once)"""

    def __init__(self, auto_finish=False):
        self.auto_finish = auto_finish
        self.played = []
        self.aborts = 0
        self._pending = []

    def play(self, samples, sample_rate):
        future = asyncio.get_running_loop().create_future()
        self.played.append((np.asarray(samples), sample_rate))
        if self.auto_finish:
            future.set_result(None)
        else:
            self._pending.append(future)
        return future

    def finish(self):
        while self._pending:
            future = self._pending.pop(0)
            if not future.done():
                future.set_result(None)
                return True
        return False

    def abort(self):
        self.aborts += 1


class FakeSource(AudioSource):
    """AudioSource fed by the test instead of a microphone"""

    def __init__(self, error=None):
        super().__init__()
        self.error = error
        self.opened = 0
        self.closed = 0

    def _open(self, constraints):
        if self.error is not None:
            raise self.error
        self.opened += 1

    def _close(self):
        self.closed += 1

    def emit(self, frame):
        self._emit(frame)


class FakeTransport(Transport):
    """Transport that records delivered messages and lets tests inject server events"""

    def __init__(self, settings, connect_error=None, auto_ready=True):
        super().__init__(settings)
        self.connect_error = connect_error
        self.auto_ready = auto_ready
        self.delivered = []
        self.fail_sends = 0
        self.disconnects = 0

    async def _connect(self, start_message):
        if self.connect_error is not None:
            raise self.connect_error
        self.delivered.append(start_message)
        if self.auto_ready:
            self._dispatch_raw({"type": "session_ready"})

    async def _deliver(self, message):
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise TransportError("simulated send failure")
        self.delivered.append(message)

    async def _disconnect(self):
        self.disconnects += 1

    def server_send(self, message):
        self._dispatch_raw(message)

    def drop(self, transient=True):
        self._fail(TransportError("simulated connection loss", transient=transient))

    def types(self):
        return [m["type"] for m in self.delivered]


def make_frame(level, timestamp, ms=FRAME_MS, sample_rate=SAMPLE_RATE, channels=1):
    """Constant-amplitude frame; level is the float amplitude (0 for silence)"""
    count = int(sample_rate * ms / 1000) * channels
    samples = np.full(count, int(level * 32767), dtype=np.int16)
    return AudioFrame(samples=samples, sample_rate=sample_rate, channels=channels, timestamp=timestamp)


async def settle(rounds=10):
    """Let queued callbacks and tasks on the loop run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def transport_settings():
    return TransportSettings(
        connect_timeout=1.0,
        max_retries=2,
        backoff_initial=0.0,
        backoff_max=0.0,
        stop_timeout=0.2,
        reconnect_attempts=2,
        status_poll_ms=1,
        response_poll_ms=1,
    )
