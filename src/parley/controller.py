#!/usr/bin/env python3
"""
Parley Conversation Controller
Wires microphone, encoder, transport, turn detection and playback into one
hands-free conversation, and handles barge-in, reconnects and teardown.

Everything runs on one asyncio loop. Each Session gets a generation number;
callbacks bound to an older generation are ignored, so nothing that fires
after stop() can touch a torn-down session.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import protocol
from .audio_source import AudioConstraints, AudioFrame, AudioSource, MicrophoneSource
from .config import EngineSettings, TransportSettings
from .conversation import ConversationTurn, Session, SessionLifecycle
from .encoder import AudioChunk, FrameEncoder
from .error_handler import (
    ConnectError,
    DeviceUnavailable,
    ErrorSeverity,
    PermissionDenied,
    TransportError,
    error_context,
    handle_error,
)
from .logging_utils import setup_logger
from .player import AudioSink, ResponsePlayer, ResponseStream, SoundDeviceSink
from .polling_transport import PollingTransport
from .protocol import EventType, ServerEvent
from .scheduling import LoopScheduler, PeriodicTimer, Scheduler
from .transport import Transport, WebSocketTransport
from .turn_detector import ServerStatusScorer, SpeechSegment, TurnDetector, build_scorer

logger = setup_logger("parley.controller", "logs/controller.log")


class ConversationState(Enum):
    """Conversation states shown to the UI"""
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RESPONDING = "responding"
    ENDED = "ended"


_LIVE_STATES = (ConversationState.CONNECTING, ConversationState.LISTENING, ConversationState.RESPONDING)


class ControllerEvents:
    """Listener registry for the events the controller exposes to a UI"""

    NAMES = (
        "status_changed",
        "user_speaking",
        "assistant_speaking",
        "transcript_updated",
        "turn_count_changed",
        "session_ended",
    )

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in self.NAMES}

    def on(self, name: str, callback: Callable) -> None:
        if name not in self._listeners:
            raise ValueError(f"Unknown controller event: {name}")
        self._listeners[name].append(callback)

    def emit(self, name: str, *args: Any) -> None:
        for callback in list(self._listeners[name]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{name} listener error: {e}")


@dataclass(eq=False)
class _PendingCommit:
    """A finished user turn waiting for its last chunks to reach the wire"""
    segment: SpeechSegment
    chunks: List[int] = field(default_factory=list)


def _overlaps(chunk: AudioChunk, segment: SpeechSegment) -> bool:
    """True if the chunk's capture span intersects the speech segment"""
    chunk_end = chunk.timestamp + chunk.duration_ms / 1000.0
    if chunk_end <= segment.start:
        return False
    return segment.end is None or chunk.timestamp < segment.end


def build_transport(settings: TransportSettings) -> Transport:
    if settings.kind == "polling":
        return PollingTransport(settings)
    return WebSocketTransport(settings)


class _SessionTurnListener:
    """Forwards detector events to the controller while the session is current"""

    def __init__(self, controller: "ConversationController", generation: int):
        self._controller = controller
        self._generation = generation

    def _current(self) -> bool:
        return self._controller.is_current(self._generation)

    def on_speech_start(self, segment: SpeechSegment) -> None:
        if self._current():
            self._controller._on_speech_start(segment)

    def on_speech_end(self, segment: SpeechSegment) -> None:
        if self._current():
            self._controller._on_speech_end(segment)

    def on_segment_discarded(self, segment: SpeechSegment) -> None:
        if self._current():
            self._controller._on_segment_discarded(segment)

    def on_misfire(self) -> None:
        if self._current():
            self._controller._on_misfire()


class ConversationController:
    """Top-level orchestrator for one hands-free conversation at a time"""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        source_factory: Optional[Callable[[], AudioSource]] = None,
        transport_factory: Optional[Callable[[TransportSettings], Transport]] = None,
        sink: Optional[AudioSink] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.settings = settings or EngineSettings()
        self.source_factory = source_factory or MicrophoneSource
        self.transport_factory = transport_factory or build_transport
        self.scheduler = scheduler or LoopScheduler()
        self.events = ControllerEvents()

        self.player = ResponsePlayer(
            sink or SoundDeviceSink(self.settings.player.output_device),
            sample_rate=self.settings.player.sample_rate,
            encoding=self.settings.player.encoding,
        )
        self.player.on_drained(self._on_playback_drained)

        self.state = ConversationState.IDLE
        self.session: Optional[Session] = None
        self.last_session: Optional[Session] = None
        self.transport: Optional[Transport] = None
        self.source: Optional[AudioSource] = None
        self.encoder: Optional[FrameEncoder] = None
        self.detector: Optional[TurnDetector] = None

        self._generation = 0
        self._flush_timer: Optional[PeriodicTimer] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._end_task: Optional[asyncio.Task] = None
        self._assistant_turn: Optional[ConversationTurn] = None
        self._response_open = False
        self._discard_response = False
        self._user_speaking = False
        self._assistant_speaking = False
        self._pending_commits: List[_PendingCommit] = []
        self._encoder_drops_seen = 0

    # ---- Commands ----
    async def start(self) -> bool:
        """Acquire the microphone and transport and start listening.

        Returns False if the session ended while connecting; the reason is
        delivered through ``session_ended``.
        """
        if self.state in _LIVE_STATES:
            logger.warning(f"start() ignored; conversation already {self.state.value}")
            return False

        self._generation += 1
        generation = self._generation
        session = Session(generation)
        self.session = session
        self._reset_turn_state()
        session.advance(SessionLifecycle.STARTING)
        self._set_state(ConversationState.CONNECTING)

        loop = asyncio.get_running_loop()
        audio = self.settings.audio
        self.encoder = FrameEncoder(
            audio.sample_rate,
            audio.channels,
            on_chunk=self._guard(generation, self._on_chunk),
            encoding=self.settings.encoder.encoding,
            loop=loop,
        )
        self.detector = TurnDetector(
            self.settings.turn,
            _SessionTurnListener(self, generation),
            scheduler=self.scheduler,
            scorer=build_scorer(self.settings.turn),
        )

        try:
            with error_context("controller", "connect", ErrorSeverity.HIGH, session_id=session.session_id):
                source = self.source_factory()
                self.source = source
                session.source = source
                source.open(
                    AudioConstraints(audio.sample_rate, audio.channels, audio.block_ms, audio.input_device),
                    self._guard(generation, self._on_frame),
                )
                await self._open_transport(session)
        except (PermissionDenied, DeviceUnavailable, ConnectError) as e:
            if self.is_current(generation):
                await self._end(str(e))
            return False

        if not self.is_current(generation):
            # stop() ran while we were connecting
            return False

        session.advance(SessionLifecycle.ACTIVE)
        self._flush_timer = PeriodicTimer(
            self.scheduler,
            self.settings.encoder.chunk_interval_ms / 1000.0,
            self._guard(generation, self._flush_audio),
        )
        self._flush_timer.start()
        self._set_state(ConversationState.LISTENING)
        logger.info(f"Conversation {session.session_id} listening")
        return True

    async def stop(self, reason: str = "user_stop") -> None:
        """End the conversation. Safe to call in any state."""
        if self.state not in _LIVE_STATES:
            return
        await self._end(reason)

    def force_turn_start(self) -> bool:
        """Push-to-talk: open a user turn now (barges in if the assistant is speaking)."""
        if self.detector is None or self.state not in (ConversationState.LISTENING, ConversationState.RESPONDING):
            return False
        self.detector.force_start(self.scheduler.now())
        return True

    def force_turn_stop(self) -> bool:
        """Push-to-talk: close the user turn now instead of waiting for silence."""
        if self.detector is None or self.state not in (ConversationState.LISTENING, ConversationState.RESPONDING):
            return False
        self.detector.force_stop(self.scheduler.now())
        return True

    # ---- Queries ----
    def is_current(self, generation: int) -> bool:
        return generation == self._generation and self.state in _LIVE_STATES

    @property
    def turn_count(self) -> int:
        session = self.session or self.last_session
        return len(session.turn_log) if session else 0

    def get_status(self) -> Dict[str, Any]:
        session = self.session or self.last_session
        return {
            "state": self.state.value,
            "session": session.get_summary() if session else None,
            "transport": self.transport.state.value if self.transport else None,
            "vad": self.detector.state.value if self.detector else None,
            "playback": self.player.get_playback_status(),
        }

    # ---- Internals: wiring ----
    def _guard(self, generation: int, callback: Callable) -> Callable:
        def guarded(*args):
            if self.is_current(generation):
                return callback(*args)
            return None
        return guarded

    async def _open_transport(self, session: Session) -> None:
        generation = session.generation
        transport = self.transport_factory(self.settings.transport)
        transport.on_event(self._guard(generation, self._on_server_event))
        transport.on_close(self._guard(generation, lambda error: self._on_transport_closed(transport, error)))
        self.transport = transport
        session.transport = transport
        encoder = self.encoder
        start_message = protocol.session_start(
            session.session_id,
            encoder.sample_rate if encoder else self.settings.audio.sample_rate,
            encoder.channels if encoder else self.settings.audio.channels,
            encoder.encoding if encoder else self.settings.encoder.encoding,
        )
        await transport.open(session.session_id, start_message)
        if not self.is_current(generation):
            await transport.close(send_stop=True)

    def _set_state(self, state: ConversationState, detail: Optional[str] = None) -> None:
        if state == self.state and detail is None:
            return
        old_state = self.state
        self.state = state
        if old_state != state:
            logger.info(f"State changed: {old_state.value} -> {state.value}")
        self.events.emit("status_changed", state, detail)

    def _set_user_speaking(self, speaking: bool) -> None:
        if speaking != self._user_speaking:
            self._user_speaking = speaking
            self.events.emit("user_speaking", speaking)

    def _set_assistant_speaking(self, speaking: bool) -> None:
        if speaking != self._assistant_speaking:
            self._assistant_speaking = speaking
            self.events.emit("assistant_speaking", speaking)

    def _reset_turn_state(self) -> None:
        self._assistant_turn = None
        self._pending_commits = []
        self._response_open = False
        self._discard_response = False
        self._encoder_drops_seen = 0

    # ---- Internals: audio path ----
    def _on_frame(self, frame: AudioFrame) -> None:
        if self.state not in (ConversationState.LISTENING, ConversationState.RESPONDING):
            return
        if self.encoder is not None:
            self.encoder.push(frame)
            self._sync_encoder_drops()
        if self.detector is not None:
            self.detector.process_frame(frame)

    def _flush_audio(self) -> None:
        if self.encoder is not None:
            self.encoder.flush()
            self._sync_encoder_drops()

    def _sync_encoder_drops(self) -> None:
        session = self.session
        if session is None or self.encoder is None:
            return
        dropped = self.encoder.dropped
        if dropped > self._encoder_drops_seen:
            session.counters.chunks_dropped += dropped - self._encoder_drops_seen
            self._encoder_drops_seen = dropped

    def _on_chunk(self, chunk: AudioChunk) -> None:
        session = self.session
        if session is None:
            return
        transport = self.transport
        if transport is not None and transport.send(protocol.audio_chunk(chunk)):
            session.counters.chunks_sent += 1
        else:
            session.counters.chunks_dropped += 1
        # Chunks belong to a turn by capture time, not by when their encode finished
        for pending in self._pending_commits:
            if _overlaps(chunk, pending.segment):
                pending.chunks.append(chunk.seq)
        segment = self.detector.segment if self.detector is not None else None
        if segment is not None and _overlaps(chunk, segment):
            session.user_chunks.append(chunk.seq)

    # ---- Internals: turn detection ----
    def _on_speech_start(self, segment: SpeechSegment) -> None:
        self._set_user_speaking(True)
        if self.state == ConversationState.RESPONDING or self.player.is_active:
            self._barge_in()

    def _barge_in(self) -> None:
        """User spoke over the reply: hard-stop playback and listen again."""
        stopped = self.player.stop()
        if self._response_open:
            # Drop the rest of the interrupted response as it arrives
            self._discard_response = True
        self._assistant_turn = None
        if self.session is not None and stopped:
            self.session.counters.barge_ins += 1
        self._set_assistant_speaking(False)
        logger.info("Barge-in: playback stopped")
        self._set_state(ConversationState.LISTENING, "barge_in")

    def _on_speech_end(self, segment: SpeechSegment) -> None:
        session = self.session
        self._set_user_speaking(False)
        if session is None:
            return
        pending = _PendingCommit(segment, session.user_chunks)
        session.user_chunks = []
        self._pending_commits.append(pending)
        self._flush_audio()
        commit = self._guard(session.generation, lambda: self._commit_turn(pending))
        if self.encoder is not None:
            # turn_commit must follow the turn's last chunk on the wire
            self.encoder.when_flushed(commit)
        else:
            commit()

    def _commit_turn(self, pending: _PendingCommit) -> None:
        session = self.session
        if session is None or pending not in self._pending_commits:
            return
        self._pending_commits.remove(pending)
        if self.transport is not None:
            self.transport.send(protocol.turn_commit())
        if self._discard_response:
            # The interrupted reply never sent response_done; the next one must still play
            self._discard_response = False
            self._response_open = False
        turn = session.record_user_turn(audio=pending.chunks)
        logger.info(f"User turn {turn.index} committed "
                    f"({pending.segment.duration_ms:.0f} ms, {len(turn.audio)} chunk(s))")
        self.events.emit("turn_count_changed", len(session.turn_log))

    def _on_segment_discarded(self, segment: SpeechSegment) -> None:
        self._set_user_speaking(False)
        if self.session is not None:
            self.session.counters.discarded_segments += 1
            self.session.user_chunks = []

    def _on_misfire(self) -> None:
        if self.session is not None:
            self.session.counters.misfires += 1
            self.session.user_chunks = []

    # ---- Internals: inbound events ----
    def _on_server_event(self, event: ServerEvent) -> None:
        if event.type in (EventType.SPEECH_STARTED, EventType.SPEECH_STOPPED):
            self._on_server_speech(event)
        elif event.type == EventType.TRANSCRIPT:
            self._on_transcript(event.role, event.text or "", append=False)
        elif event.type == EventType.TRANSCRIPT_DELTA:
            self._on_transcript(event.role, event.text or "", append=True)
        elif event.type == EventType.RESPONSE_AUDIO:
            self._on_response_audio(event.audio or b"")
        elif event.type == EventType.RESPONSE_DONE:
            self._on_response_done()
        elif event.type == EventType.ERROR:
            handle_error(TransportError(f"remote error: {event.reason}", operation="receive"),
                         "controller", "server_event", ErrorSeverity.MEDIUM,
                         session_id=self.session.session_id if self.session else None)
            self._set_state(self.state, f"error: {event.reason}")

    def _on_server_speech(self, event: ServerEvent) -> None:
        detector = self.detector
        if detector is None or not isinstance(detector.scorer, ServerStatusScorer):
            logger.debug(f"Ignoring server {event.type.value}; turn detection is local")
            return
        if detector.scorer.interpret(event):
            detector.feed(detector.scorer.level, self.scheduler.now())

    def _on_transcript(self, role: Optional[str], text: str, append: bool) -> None:
        session = self.session
        if session is None or role is None:
            return
        if role == "assistant":
            if self._discard_response:
                return
            turn = self._assistant_turn
            if turn is None:
                turn = self._open_assistant_turn(text=None)
            if append and turn.text:
                turn.text += text
            else:
                turn.text = text
        else:
            turn = session.turn_log.fill_text("user", text, append=append)
            if turn is None:
                # Server-side detection can report a turn we never committed locally
                turn = session.record_user_turn()
                turn.text = text
                self.events.emit("turn_count_changed", len(session.turn_log))
        self.events.emit("transcript_updated", turn)

    def _open_assistant_turn(self, text: Optional[str], stream: Optional[ResponseStream] = None) -> ConversationTurn:
        session = self.session
        turn = session.record_assistant_turn(text=text, audio=[stream.turn_id] if stream else None)
        self._assistant_turn = turn
        self.events.emit("turn_count_changed", len(session.turn_log))
        return turn

    def _on_response_audio(self, audio: bytes) -> None:
        if self._discard_response:
            return
        self._response_open = True
        stream = self.player.enqueue(audio)
        if self._assistant_turn is None:
            self._open_assistant_turn(text=None, stream=stream)
        if self.state == ConversationState.LISTENING:
            self._set_state(ConversationState.RESPONDING)
        self._set_assistant_speaking(True)

    def _on_response_done(self) -> None:
        if self._discard_response:
            self._discard_response = False
            self._response_open = False
            return
        self._response_open = False
        self._assistant_turn = None
        self.player.mark_complete()

    def _on_playback_drained(self, stream: ResponseStream) -> None:
        if self.session is not None:
            self.session.counters.playback_failures += stream.failed
        self._set_assistant_speaking(False)
        if self.state == ConversationState.RESPONDING:
            self._set_state(ConversationState.LISTENING)

    # ---- Internals: failures and teardown ----
    def _on_transport_closed(self, transport: Transport, error: TransportError) -> None:
        if transport is not self.transport:
            return
        self.transport = None
        if error.transient and self.state in (ConversationState.LISTENING, ConversationState.RESPONDING):
            logger.warning(f"Transport lost ({error}); reconnecting")
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(self._generation, error))
            return
        handle_error(error, "controller", "transport", ErrorSeverity.HIGH,
                     session_id=self.session.session_id if self.session else None)
        self._end_task = asyncio.get_running_loop().create_task(self._end(f"transport failed: {error}"))

    async def _reconnect(self, generation: int, error: TransportError) -> None:
        session = self.session
        settings = self.settings.transport
        self._set_state(self.state, "reconnecting")
        delay = settings.backoff_initial
        last_error: Exception = error
        for attempt in range(1, settings.reconnect_attempts + 1):
            await asyncio.sleep(delay)
            if not self.is_current(generation) or session is None:
                return
            logger.info(f"Reconnect attempt {attempt}/{settings.reconnect_attempts}")
            try:
                await self._open_transport(session)
            except ConnectError as e:
                last_error = e
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                self.transport = None
                if not e.transient:
                    break
                delay = min(delay * 2, settings.backoff_max)
                continue
            if not self.is_current(generation):
                return
            session.counters.reconnects += 1
            self._reconnect_task = None
            self._set_state(self.state, "reconnected")
            return

        self._reconnect_task = None
        if self.is_current(generation):
            await self._end(f"transport failed: {last_error}")

    async def _end(self, reason: str) -> None:
        """Tear the session down. Everything local happens before the first await."""
        if self.state not in _LIVE_STATES:
            return
        session = self.session
        transport = self.transport
        self._generation += 1

        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._end_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._end_task = None
        self._pending_commits = []
        if self.detector is not None:
            self.detector.reset()
        if self.source is not None:
            self.source.close()
        if self.encoder is not None:
            self.encoder.close()
        self.player.stop()
        self._set_user_speaking(False)
        self._set_assistant_speaking(False)

        if session is not None:
            session.advance(SessionLifecycle.ENDING)
        self.transport = None
        self.source = None
        self.session = None
        self.last_session = session
        self._set_state(ConversationState.ENDED, reason)
        logger.info(f"Conversation ended: {reason}")

        if transport is not None:
            try:
                await transport.close(send_stop=True)
            except Exception as e:
                logger.warning(f"Error closing transport: {e}")
        if session is not None:
            session.advance(SessionLifecycle.CLOSED)
        self.events.emit("session_ended", reason)


__all__ = [
    "ConversationState",
    "ControllerEvents",
    "ConversationController",
    "build_transport",
]
