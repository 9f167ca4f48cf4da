import asyncio
import base64
import os
import sys

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import FRAME_MS, FakeScheduler, FakeSink, FakeSource, FakeTransport, make_frame, settle
from parley.config import (
    AudioSettings,
    EncoderSettings,
    EngineSettings,
    PlayerSettings,
    TransportSettings,
    TurnDetectorConfig,
)
from parley.controller import ControllerEvents, ConversationController, ConversationState
from parley.conversation import SessionLifecycle
from parley.error_handler import ConnectError, DeviceUnavailable, PermissionDenied

FRAME = FRAME_MS / 1000.0
LOUD = 0.2


def _settings(**turn):
    return EngineSettings(
        audio=AudioSettings(sample_rate=24000, channels=1, block_ms=FRAME_MS),
        encoder=EncoderSettings(encoding="pcm16", chunk_interval_ms=200),
        turn=TurnDetectorConfig(**turn),
        transport=TransportSettings(connect_timeout=1.0, max_retries=1, backoff_initial=0.0,
                                    backoff_max=0.0, stop_timeout=0.2, reconnect_attempts=2),
        player=PlayerSettings(sample_rate=24000, encoding="pcm16"),
    )


def _audio_message(value=100, count=480):
    pcm = np.full(count, value, dtype="<i2").tobytes()
    return {"type": "audio", "delta": base64.b64encode(pcm).decode()}


class Harness:
    def __init__(self, settings=None, source_error=None, connect_errors=(), auto_finish=False):
        self.scheduler = FakeScheduler()
        self.sink = FakeSink(auto_finish=auto_finish)
        self.source_error = source_error
        self.connect_errors = list(connect_errors)
        self.sources = []
        self.transports = []
        self.events = []
        self.controller = ConversationController(
            settings or _settings(),
            source_factory=self._make_source,
            transport_factory=self._make_transport,
            sink=self.sink,
            scheduler=self.scheduler,
        )
        for name in ControllerEvents.NAMES:
            self.controller.events.on(name, lambda *args, n=name: self.events.append((n,) + args))

    def _make_source(self):
        source = FakeSource(error=self.source_error)
        self.sources.append(source)
        return source

    def _make_transport(self, settings):
        error = self.connect_errors.pop(0) if self.connect_errors else None
        transport = FakeTransport(settings, connect_error=error)
        self.transports.append(transport)
        return transport

    @property
    def source(self):
        return self.sources[-1]

    @property
    def transport(self):
        return self.transports[-1]

    def speak(self, pattern):
        """Emit (level, duration_ms) runs as 20 ms frames while advancing the clock"""
        for level, duration_ms in pattern:
            for _ in range(int(round(duration_ms / FRAME_MS))):
                self.source.emit(make_frame(level, self.scheduler.now()))
                self.scheduler.advance(FRAME)

    def named(self, name):
        return [event[1:] for event in self.events if event[0] == name]

    def details(self):
        return [detail for _, detail in self.named("status_changed")]


def test_start_reaches_listening():
    async def run():
        h = Harness()
        ok = await h.controller.start()
        return h, ok

    h, ok = asyncio.run(run())

    assert ok
    assert h.controller.state == ConversationState.LISTENING
    assert [state for state, _ in h.named("status_changed")] == [
        ConversationState.CONNECTING, ConversationState.LISTENING]
    assert h.transport.types() == ["session_start"]
    assert h.transport.delivered[0]["sample_rate"] == 24000
    assert h.source.opened == 1
    assert h.controller.session.lifecycle == SessionLifecycle.ACTIVE


def test_700ms_speech_then_silence_commits_one_turn():
    async def run():
        h = Harness(_settings(silence_threshold_ms=2500, min_speech_ms=500))
        await h.controller.start()
        h.speak([(LOUD, 700), (0.0, 3000)])
        await settle()
        return h

    h = asyncio.run(run())

    types = h.transport.types()
    assert types.count("turn_commit") == 1
    assert h.controller.turn_count == 1
    assert h.controller.session.counters.user_turns == 1
    assert h.named("turn_count_changed") == [(1,)]
    assert h.named("user_speaking") == [(True,), (False,)]

    seqs = [m["seq"] for m in h.transport.delivered if m["type"] == "audio"]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == len(seqs)
    # Every frame up to the commit has been sent before it
    commit_index = types.index("turn_commit")
    assert types[commit_index - 1] == "audio"
    user_turn = h.controller.session.turn_log.latest("user")
    assert user_turn.audio


def test_300ms_burst_yields_no_turn():
    async def run():
        h = Harness(_settings(silence_threshold_ms=2500, min_speech_ms=500))
        await h.controller.start()
        h.speak([(LOUD, 300), (0.0, 3000)])
        await settle()
        return h

    h = asyncio.run(run())

    assert "turn_commit" not in h.transport.types()
    assert h.controller.turn_count == 0
    assert h.controller.session.counters.discarded_segments == 1


def test_brief_spike_is_a_misfire():
    async def run():
        h = Harness()
        await h.controller.start()
        h.speak([(LOUD, 40), (0.0, 500)])
        return h

    h = asyncio.run(run())

    assert h.named("user_speaking") == []
    assert h.controller.session.counters.misfires == 1


def test_barge_in_with_three_queued_chunks():
    async def run():
        h = Harness()
        await h.controller.start()
        for _ in range(3):
            h.transport.server_send(_audio_message())
        assert h.controller.state == ConversationState.RESPONDING
        assert h.controller.player.queue_length == 3

        # Confirmed speech while responding: no await between here and the checks
        h.speak([(LOUD, 3 * FRAME_MS)])
        snapshot = (h.controller.state, h.controller.player.queue_length, h.controller.player.is_playing)
        await settle()
        return h, snapshot

    h, snapshot = asyncio.run(run())

    assert snapshot == (ConversationState.LISTENING, 0, False)
    assert h.sink.aborts == 1
    assert h.controller.session.counters.barge_ins == 1
    assert h.named("assistant_speaking") == [(True,), (False,)]
    assert "barge_in" in h.details()


def test_interrupted_response_audio_is_discarded():
    async def run():
        h = Harness(auto_finish=True)
        await h.controller.start()
        h.transport.server_send(_audio_message())
        h.speak([(LOUD, 3 * FRAME_MS)])

        # Tail of the interrupted reply
        h.transport.server_send(_audio_message())
        assert not h.controller.player.is_active
        h.transport.server_send({"type": "response_done"})

        # Next reply plays normally
        h.transport.server_send(_audio_message(7))
        state = h.controller.state
        await settle()
        return h, state

    h, state = asyncio.run(run())

    assert state == ConversationState.RESPONDING
    played = [int(round(samples[0] * 32768)) for samples, _ in h.sink.played]
    assert played[-1] == 7


def test_response_plays_and_returns_to_listening():
    async def run():
        h = Harness()
        await h.controller.start()
        h.speak([(LOUD, 700), (0.0, 2600)])
        h.transport.server_send({"type": "transcript", "role": "user", "text": "book a table"})
        h.transport.server_send({"type": "transcript_delta", "role": "assistant", "delta": "Sure, "})
        h.transport.server_send({"type": "transcript_delta", "role": "assistant", "delta": "when?"})
        for _ in range(2):
            h.transport.server_send(_audio_message())
        h.transport.server_send({"type": "response_done"})
        assert h.controller.state == ConversationState.RESPONDING

        for _ in range(2):
            await settle()
            h.sink.finish()
        await settle()
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.LISTENING
    assert h.named("assistant_speaking") == [(True,), (False,)]
    turns = h.controller.session.turn_log.turns
    assert [(t.role, t.text) for t in turns] == [("user", "book a table"), ("assistant", "Sure, when?")]
    assert h.named("turn_count_changed") == [(1,), (2,)]
    assert h.named("transcript_updated")[-1][0].text == "Sure, when?"
    assert len(h.sink.played) == 2


def test_device_unavailable_ends_session_immediately():
    async def run():
        h = Harness(source_error=DeviceUnavailable("no input device"))
        ok = await h.controller.start()
        return h, ok

    h, ok = asyncio.run(run())

    assert ok is False
    assert h.controller.state == ConversationState.ENDED
    assert h.named("session_ended") == [("no input device",)]
    assert h.transports == []


def test_permission_denied_is_not_retried():
    async def run():
        h = Harness(source_error=PermissionDenied("Microphone access denied"))
        await h.controller.start()
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.ENDED
    assert len(h.sources) == 1
    assert "denied" in h.named("session_ended")[0][0]


def test_connect_failure_releases_microphone():
    async def run():
        h = Harness(connect_errors=[ConnectError("refused")])
        ok = await h.controller.start()
        return h, ok

    h, ok = asyncio.run(run())

    assert ok is False
    assert h.controller.state == ConversationState.ENDED
    assert h.source.closed == 1
    assert not h.source.is_open


def test_stop_releases_everything_and_ignores_late_callbacks():
    async def run():
        h = Harness()
        await h.controller.start()
        h.speak([(LOUD, 200)])
        await settle()
        transport = h.transport
        h.transport.server_send(_audio_message())

        await h.controller.stop()
        await h.controller.stop()

        # Late events against the old session
        transport.server_send(_audio_message())
        h.scheduler.advance(10.0)
        return h, transport

    h, transport = asyncio.run(run())

    assert h.controller.state == ConversationState.ENDED
    assert transport.types()[-1] == "session_stop"
    assert h.source.closed == 1
    assert h.scheduler.pending == []
    assert not h.controller.player.is_active
    assert h.named("session_ended") == [("user_stop",)]
    assert h.named("user_speaking")[-1] == (False,)
    assert h.controller.last_session.lifecycle == SessionLifecycle.CLOSED


def test_restart_after_ended_gets_fresh_session():
    async def run():
        h = Harness()
        await h.controller.start()
        first = h.controller.session
        await h.controller.stop()
        await h.controller.start()
        return h, first

    h, first = asyncio.run(run())

    second = h.controller.session
    assert h.controller.state == ConversationState.LISTENING
    assert second.generation > first.generation
    assert second.session_id != first.session_id
    assert len(h.transports) == 2


def test_transient_drop_reconnects():
    async def run():
        h = Harness()
        await h.controller.start()
        h.transports[0].drop(transient=True)
        await settle(30)
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.LISTENING
    assert len(h.transports) == 2
    assert h.controller.transport is h.transports[1]
    assert h.controller.session.counters.reconnects == 1
    assert "reconnecting" in h.details()
    assert "reconnected" in h.details()
    assert h.named("session_ended") == []


def test_reconnect_budget_exhausted_ends_session():
    async def run():
        h = Harness(connect_errors=[None, ConnectError("refused"), ConnectError("refused")])
        await h.controller.start()
        h.transports[0].drop(transient=True)
        await settle(50)
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.ENDED
    assert len(h.transports) == 3
    reason = h.named("session_ended")[0][0]
    assert reason.startswith("transport failed")
    assert h.source.closed == 1


def test_fatal_transport_error_ends_without_reconnect():
    async def run():
        h = Harness()
        await h.controller.start()
        h.transports[0].drop(transient=False)
        await settle(20)
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.ENDED
    assert len(h.transports) == 1


def test_server_strategy_follows_remote_speech_events():
    async def run():
        h = Harness(_settings(strategy="server"))
        await h.controller.start()
        h.transport.server_send({"type": "speech_started"})
        h.speak([(0.0, 800)])
        h.transport.server_send({"type": "speech_stopped"})
        h.speak([(0.0, 3000)])
        await settle()
        return h

    h = asyncio.run(run())

    assert h.named("user_speaking") == [(True,), (False,)]
    assert h.transport.types().count("turn_commit") == 1


def test_force_turn_start_barges_in_and_force_stop_commits():
    async def run():
        h = Harness()
        await h.controller.start()
        h.transport.server_send(_audio_message())
        assert h.controller.force_turn_start()
        state = h.controller.state
        h.scheduler.advance(0.6)
        assert h.controller.force_turn_stop()
        await settle()
        return h, state

    h, state = asyncio.run(run())

    assert state == ConversationState.LISTENING
    assert h.controller.session.counters.barge_ins == 1
    assert h.transport.types().count("turn_commit") == 1


def test_remote_error_is_reported_without_ending():
    async def run():
        h = Harness()
        await h.controller.start()
        h.transport.server_send({"type": "error", "error": "model overloaded"})
        h.transport.server_send("{not json")
        return h

    h = asyncio.run(run())

    assert h.controller.state == ConversationState.LISTENING
    assert "error: model overloaded" in h.details()


def test_compressed_turn_commit_follows_its_audio():
    settings = _settings(silence_threshold_ms=2500, min_speech_ms=500)
    settings.encoder = EncoderSettings(encoding="flac", chunk_interval_ms=200)

    async def run():
        h = Harness(settings)
        await h.controller.start()
        h.speak([(LOUD, 700), (0.0, 3000)])
        # Encodes finish on the executor; wait for the commit to go out
        for _ in range(300):
            if "turn_commit" in h.transport.types():
                break
            await asyncio.sleep(0.01)
        await settle()
        return h

    h = asyncio.run(run())

    types = h.transport.types()
    assert types.count("turn_commit") == 1
    commit_index = types.index("turn_commit")
    sent_before = [m["seq"] for m in h.transport.delivered[:commit_index] if m["type"] == "audio"]
    assert sent_before == list(range(len(sent_before)))
    assert len(sent_before) >= 15

    user_turn = h.controller.session.turn_log.latest("user")
    assert user_turn.audio[0] == 0
    assert set(user_turn.audio) <= set(sent_before)
    # 700 ms of speech spans the first four 200 ms chunks
    assert user_turn.audio == [0, 1, 2, 3]
    assert h.named("turn_count_changed") == [(1,)]


def test_reply_cancelled_without_response_done_does_not_mute_the_next():
    async def run():
        h = Harness(auto_finish=True)
        await h.controller.start()
        h.transport.server_send(_audio_message())
        # Barge in, then finish the new turn; the old reply never sends response_done
        h.speak([(LOUD, 700), (0.0, 2600)])
        h.transport.server_send(_audio_message(9))
        state = h.controller.state
        await settle()
        return h, state

    h, state = asyncio.run(run())

    assert h.controller.session.counters.barge_ins == 1
    assert h.transport.types().count("turn_commit") == 1
    assert state == ConversationState.RESPONDING
    played = [int(round(samples[0] * 32768)) for samples, _ in h.sink.played]
    assert played[-1] == 9
