"""
Parley session data
Per-session state owned by the ConversationController: lifecycle, counters and the turn log
"""
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .logging_utils import setup_logger

logger = setup_logger("parley.conversation", "logs/conversation.log")


class SessionLifecycle(Enum):
    """Session lifecycle states"""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    CLOSED = "closed"


_LIFECYCLE_ORDER = list(SessionLifecycle)


@dataclass
class ConversationTurn:
    """One turn in the log. Only ``text`` may change after it is appended."""
    role: str  # "user" or "assistant"
    text: Optional[str] = None
    audio: List[int] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    index: int = 0


class TurnLog:
    """Append-only list of ConversationTurns with late transcript fill-in"""

    def __init__(self, max_turns: int = 500):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []
        self._next_index = 0

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(list(self._turns))

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def append(self, role: str, text: Optional[str] = None, audio: Optional[List[int]] = None) -> ConversationTurn:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown turn role: {role}")
        turn = ConversationTurn(role=role, text=text, audio=list(audio or []), index=self._next_index)
        self._next_index += 1
        self._turns.append(turn)

        # Maintain size limit
        if len(self._turns) > self.max_turns:
            removed_count = len(self._turns) - self.max_turns
            self._turns = self._turns[removed_count:]
            logger.debug(f"Trimmed turn log: removed {removed_count} old turns")
        return turn

    def latest(self, role: str) -> Optional[ConversationTurn]:
        for turn in reversed(self._turns):
            if turn.role == role:
                return turn
        return None

    def fill_text(self, role: str, text: str, append: bool = False) -> Optional[ConversationTurn]:
        """Set (or extend, for deltas) the transcript of the newest turn of ``role``"""
        turn = self.latest(role)
        if turn is None:
            return None
        if append and turn.text:
            turn.text += text
        else:
            turn.text = text
        return turn

    def count(self, role: Optional[str] = None) -> int:
        if role is None:
            return len(self._turns)
        return sum(1 for t in self._turns if t.role == role)

    def export(self) -> List[Dict[str, Any]]:
        return [asdict(t) for t in self._turns]


@dataclass
class SessionCounters:
    user_turns: int = 0
    assistant_turns: int = 0
    chunks_sent: int = 0
    chunks_dropped: int = 0
    playback_failures: int = 0
    misfires: int = 0
    discarded_segments: int = 0
    barge_ins: int = 0
    reconnects: int = 0


class Session:
    """All mutable state of one conversation. Discarded on stop or fatal error."""

    def __init__(self, generation: int, session_id: Optional[str] = None):
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self.generation = generation
        self.lifecycle = SessionLifecycle.IDLE
        self.started_at = time.time()
        self.transport = None
        self.source = None
        self.turn_log = TurnLog()
        self.counters = SessionCounters()
        self.user_chunks: List[int] = []
        self.state_change_callbacks: List[Callable[["Session"], None]] = []

    @property
    def is_active(self) -> bool:
        return self.lifecycle == SessionLifecycle.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.lifecycle in (SessionLifecycle.ENDING, SessionLifecycle.CLOSED)

    def advance(self, new_state: SessionLifecycle) -> None:
        """Move the lifecycle forward; it never moves backwards."""
        if _LIFECYCLE_ORDER.index(new_state) <= _LIFECYCLE_ORDER.index(self.lifecycle):
            return
        old_state = self.lifecycle
        self.lifecycle = new_state
        logger.info(f"Session {self.session_id} (gen {self.generation}): {old_state.value} -> {new_state.value}")
        self._notify_state_change()

    def record_user_turn(self, audio: Optional[List[int]] = None) -> ConversationTurn:
        turn = self.turn_log.append("user", audio=self.user_chunks if audio is None else audio)
        self.user_chunks = []
        self.counters.user_turns += 1
        return turn

    def record_assistant_turn(self, text: Optional[str] = None, audio: Optional[List[int]] = None) -> ConversationTurn:
        turn = self.turn_log.append("assistant", text=text, audio=audio)
        self.counters.assistant_turns += 1
        return turn

    def register_state_callback(self, callback: Callable[["Session"], None]) -> None:
        self.state_change_callbacks.append(callback)

    def _notify_state_change(self) -> None:
        for callback in self.state_change_callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "generation": self.generation,
            "lifecycle": self.lifecycle.value,
            "duration": time.time() - self.started_at,
            "turns": len(self.turn_log),
            "counters": asdict(self.counters),
        }


__all__ = ["SessionLifecycle", "ConversationTurn", "TurnLog", "SessionCounters", "Session"]
