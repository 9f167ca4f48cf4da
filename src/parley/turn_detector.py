"""
Voice-activity turn detection.

The state machine is

    silent -> speech_candidate -> speech_confirmed -> trailing_silence -> silent

with separate enter/leave thresholds (hysteresis), a minimum run of frames
before speech counts (misfire suppression), a silence threshold before the
turn completes, and a minimum speech duration below which a finished segment
is discarded as noise.

Scores come from a pluggable scorer: EnergyScorer computes them locally from
frame energy, ServerStatusScorer replays the speech_started/speech_stopped
status reported by the remote endpoint. The machine and thresholds are the
same in both cases.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import numpy as np

from .audio_source import AudioFrame
from .config import TurnDetectorConfig
from .logging_utils import setup_logger
from .protocol import EventType, ServerEvent
from .scheduling import Scheduler, TimerHandle

logger = setup_logger("parley.turn_detector", "logs/turn_detector.log")


class VadState(Enum):
    SILENT = "silent"
    SPEECH_CANDIDATE = "speech_candidate"
    SPEECH_CONFIRMED = "speech_confirmed"
    TRAILING_SILENCE = "trailing_silence"


@dataclass
class SpeechSegment:
    start: float
    end: Optional[float] = None
    valid: bool = False

    @property
    def duration(self) -> float:
        if self.end is None:
            return 0.0
        return max(0.0, self.end - self.start)

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000.0


class TurnListener(Protocol):
    def on_speech_start(self, segment: SpeechSegment) -> None:
        ...

    def on_speech_end(self, segment: SpeechSegment) -> None:
        ...

    def on_segment_discarded(self, segment: SpeechSegment) -> None:
        ...

    def on_misfire(self) -> None:
        ...


class Scorer(Protocol):
    def evaluate(self, frame: AudioFrame) -> float:
        ...


class EnergyScorer:
    """Maps frame RMS energy linearly onto 0..1 between a floor and a ceiling."""

    def __init__(self, floor: float = 0.005, ceiling: float = 0.05):
        if ceiling <= floor:
            raise ValueError("energy ceiling must be above the floor")
        self.floor = floor
        self.ceiling = ceiling

    def evaluate(self, frame: AudioFrame) -> float:
        samples = frame.mono_float()
        if samples.size == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(samples ** 2)))
        return float(min(1.0, max(0.0, (rms - self.floor) / (self.ceiling - self.floor))))


class ServerStatusScorer:
    """Holds the speech level last reported by the remote endpoint."""

    def __init__(self) -> None:
        self.level = 0.0

    def interpret(self, event: ServerEvent) -> bool:
        """Apply a status event. Returns True if it changed the level."""
        if event.type == EventType.SPEECH_STARTED:
            new_level = 1.0
        elif event.type == EventType.SPEECH_STOPPED:
            new_level = 0.0
        else:
            return False
        changed = new_level != self.level
        self.level = new_level
        return changed

    def evaluate(self, frame: AudioFrame) -> float:
        return self.level

    def reset(self) -> None:
        self.level = 0.0


class TurnDetector:
    """Hysteresis VAD state machine driven by (score, timestamp) samples."""

    def __init__(self, config: TurnDetectorConfig, listener: TurnListener,
                 scheduler: Optional[Scheduler] = None, scorer: Optional[Scorer] = None):
        if config.negative_threshold > config.positive_threshold:
            raise ValueError("negative threshold must not exceed positive threshold")
        self.config = config
        self.listener = listener
        self.scheduler = scheduler
        self.scorer = scorer
        self.state = VadState.SILENT
        self.segment: Optional[SpeechSegment] = None
        self._run_frames = 0
        self._silence_start: Optional[float] = None
        self._timer: Optional[TimerHandle] = None
        self._last_timestamp: Optional[float] = None

    @property
    def silence_threshold(self) -> float:
        return self.config.silence_threshold_ms / 1000.0

    @property
    def in_speech(self) -> bool:
        return self.state in (VadState.SPEECH_CONFIRMED, VadState.TRAILING_SILENCE)

    def process_frame(self, frame: AudioFrame) -> VadState:
        """Score a frame with the configured scorer and feed it."""
        if self.scorer is None:
            raise RuntimeError("TurnDetector has no scorer")
        return self.feed(self.scorer.evaluate(frame), frame.timestamp)

    def feed(self, score: float, timestamp: float) -> VadState:
        self._last_timestamp = timestamp
        cfg = self.config

        if self.state == VadState.SILENT:
            if score > cfg.positive_threshold:
                self.segment = SpeechSegment(start=timestamp)
                self._run_frames = 1
                self.state = VadState.SPEECH_CANDIDATE
                self._maybe_confirm()

        elif self.state == VadState.SPEECH_CANDIDATE:
            if score > cfg.positive_threshold:
                self._run_frames += 1
                self._maybe_confirm()
            else:
                self._misfire()

        elif self.state == VadState.SPEECH_CONFIRMED:
            if score < cfg.negative_threshold:
                self._enter_trailing(timestamp)

        elif self.state == VadState.TRAILING_SILENCE:
            if score > cfg.positive_threshold:
                self._resume_speech()
            elif self._silence_start is not None and timestamp - self._silence_start >= self.silence_threshold:
                self._complete()

        return self.state

    def poll(self, now: float) -> VadState:
        """Complete a pending turn if the silence threshold has elapsed by ``now``."""
        if (self.state == VadState.TRAILING_SILENCE and self._silence_start is not None
                and now - self._silence_start >= self.silence_threshold):
            self._complete()
        return self.state

    def force_start(self, timestamp: float) -> None:
        """Open a confirmed segment immediately (push-to-talk)."""
        if self.state == VadState.TRAILING_SILENCE:
            self._resume_speech()
            return
        if self.state == VadState.SPEECH_CONFIRMED:
            return
        self.segment = SpeechSegment(start=timestamp)
        self._run_frames = self.config.confirm_frames
        self.state = VadState.SPEECH_CANDIDATE
        self._maybe_confirm()

    def force_stop(self, timestamp: float) -> None:
        """Close the current segment now without waiting for the silence threshold."""
        if self.state == VadState.SPEECH_CANDIDATE:
            self._misfire()
        elif self.state == VadState.SPEECH_CONFIRMED:
            self._enter_trailing(timestamp)
            self._complete()
        elif self.state == VadState.TRAILING_SILENCE:
            self._complete()

    def reset(self) -> None:
        self._cancel_timer()
        self.state = VadState.SILENT
        self.segment = None
        self._run_frames = 0
        self._silence_start = None
        if isinstance(self.scorer, ServerStatusScorer):
            self.scorer.reset()

    # ---- Transitions ----
    def _maybe_confirm(self) -> None:
        if self._run_frames < self.config.confirm_frames or self.segment is None:
            return
        self.state = VadState.SPEECH_CONFIRMED
        logger.debug(f"Speech confirmed after {self._run_frames} frame(s)")
        self.listener.on_speech_start(self.segment)

    def _misfire(self) -> None:
        logger.debug(f"VAD misfire after {self._run_frames} frame(s)")
        self.state = VadState.SILENT
        self.segment = None
        self._run_frames = 0
        self.listener.on_misfire()

    def _enter_trailing(self, timestamp: float) -> None:
        self.state = VadState.TRAILING_SILENCE
        self._silence_start = timestamp
        if self.segment is not None:
            self.segment.end = timestamp
        self._arm_timer()

    def _resume_speech(self) -> None:
        self._cancel_timer()
        self.state = VadState.SPEECH_CONFIRMED
        self._silence_start = None
        if self.segment is not None:
            self.segment.end = None
        logger.debug("Renewed speech; pending turn completion cancelled")

    def _complete(self) -> None:
        self._cancel_timer()
        segment = self.segment
        self.state = VadState.SILENT
        self.segment = None
        self._run_frames = 0
        self._silence_start = None
        if segment is None:
            return
        segment.valid = segment.duration_ms >= self.config.min_speech_ms
        if segment.valid:
            logger.info(f"Turn complete: {segment.duration_ms:.0f} ms of speech")
            self.listener.on_speech_end(segment)
        else:
            logger.info(f"Discarding {segment.duration_ms:.0f} ms segment (< {self.config.min_speech_ms:.0f} ms)")
            self.listener.on_segment_discarded(segment)

    # ---- Silence-completion timer ----
    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self.scheduler is None:
            return
        self._timer = self.scheduler.call_later(self.silence_threshold, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self.scheduler is None:
            return
        now = self.scheduler.now()
        self.poll(now)
        if self.state == VadState.TRAILING_SILENCE and self._silence_start is not None:
            # Timer fired a little early; wait out the remainder
            remaining = self.silence_threshold - (now - self._silence_start)
            self._timer = self.scheduler.call_later(max(remaining, 0.001), self._on_timer)


def build_scorer(config: TurnDetectorConfig) -> Scorer:
    if config.strategy == "server":
        return ServerStatusScorer()
    return EnergyScorer(floor=config.energy_floor, ceiling=config.energy_ceiling)


__all__ = [
    "VadState",
    "SpeechSegment",
    "TurnListener",
    "Scorer",
    "EnergyScorer",
    "ServerStatusScorer",
    "TurnDetector",
    "build_scorer",
]
