"""Adaptive batch accumulator for streamed PCM16 frames"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from .config import Settings, settings as default_settings
from .models import Frame
from .vad_processor import GateResult, VoiceActivityGate

logger = structlog.get_logger(__name__)


class FlushReason(str, Enum):
    THRESHOLD = "threshold"
    ESCALATED = "escalated"
    ENDPOINT = "endpoint"
    HARD_CAP = "hard_cap"
    DRAIN = "drain"


@dataclass(frozen=True)
class BatchSnapshot:
    """Audio taken out of the buffer for one flush"""
    pcm: bytes
    frame_count: int
    duration_ms: float
    speech_frames: int
    reason: FlushReason

    @property
    def size(self) -> int:
        return len(self.pcm)


@dataclass(frozen=True)
class AddResult:
    gate: GateResult
    included: bool
    flush_reason: Optional[FlushReason] = None


class AdaptiveBatcher:
    """Owns one speaker's audio buffer and decides when it is ready to flush.

    A flush is due once duration, byte size and speech-frame count all reach
    their thresholds and no retry deferral is pending. After repeated
    low-quality results (``unknown_streak`` at or above the escalation limit)
    shorter thresholds apply. The hard cap forces a flush regardless.
    """

    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        self.settings = config or default_settings
        self.clock = clock
        self.gate = VoiceActivityGate(self.settings)

        self._buffer = bytearray()
        self.frame_count = 0
        self.accumulated_duration_ms = 0.0
        self.speech_frame_count = 0

        self.unknown_streak = 0
        self._defer_until: Optional[float] = None
        self._empty_backoff_ms = 0
        self.overflow_frames = 0

    @property
    def accumulated_bytes(self) -> int:
        return len(self._buffer)

    @property
    def is_empty(self) -> bool:
        return not self._buffer

    @property
    def silence_run_length(self) -> int:
        return self.gate.silence_run_length

    @property
    def escalated(self) -> bool:
        return self.unknown_streak >= self.settings.escalation_limit

    @property
    def deferral_active(self) -> bool:
        return self._defer_until is not None and self.clock() < self._defer_until

    def add_frame(self, frame: Frame, evaluate: bool = True) -> AddResult:
        """Gate a frame, append it when included, and report a due flush"""
        gate = self.gate.classify(frame.rms_energy, buffer_has_audio=not self.is_empty)

        included = gate.include
        if included and self.accumulated_duration_ms + frame.duration_ms > self.settings.provider_max_duration_ms:
            # Only reachable while a flush is in flight and the buffer keeps growing
            self.overflow_frames += 1
            included = False
            if self.overflow_frames % 10 == 1:
                logger.warning(
                    "Buffer at provider duration limit, dropping frame",
                    duration_ms=self.accumulated_duration_ms,
                    dropped=self.overflow_frames,
                )

        if included:
            self._buffer.extend(frame.data)
            self.frame_count += 1
            self.accumulated_duration_ms += frame.duration_ms
            if gate.is_speech:
                self.speech_frame_count += 1

        if not evaluate:
            return AddResult(gate, included)

        if gate.endpoint and not self.is_empty:
            return AddResult(gate, included, FlushReason.ENDPOINT)
        return AddResult(gate, included, self.flush_reason())

    def flush_reason(self) -> Optional[FlushReason]:
        if self.is_empty:
            return None

        if (
            self.accumulated_duration_ms >= self.settings.max_batch_duration_ms
            or self.accumulated_bytes >= self.settings.max_batch_bytes
        ):
            return FlushReason.HARD_CAP

        if self.deferral_active:
            return None

        escalated = self.escalated
        if escalated:
            required_ms = self.settings.escalated_duration_ms
            required_bytes = self.settings.escalated_flush_bytes
        else:
            required_ms = self.settings.effective_min_batch_duration_ms
            required_bytes = self.settings.min_flush_bytes

        if (
            self.accumulated_duration_ms >= required_ms
            and self.accumulated_bytes >= required_bytes
            and self.speech_frame_count >= self.settings.min_speech_frames
        ):
            return FlushReason.ESCALATED if escalated else FlushReason.THRESHOLD
        return None

    def below_submit_floor(self) -> bool:
        return self.accumulated_bytes < self.settings.min_submit_bytes

    def take(self, reason: FlushReason) -> BatchSnapshot:
        """Move the buffered audio into a snapshot and reset the counters"""
        snapshot = BatchSnapshot(
            pcm=bytes(self._buffer),
            frame_count=self.frame_count,
            duration_ms=self.accumulated_duration_ms,
            speech_frames=self.speech_frame_count,
            reason=reason,
        )
        self.clear()
        return snapshot

    def clear(self):
        self._buffer.clear()
        self.frame_count = 0
        self.accumulated_duration_ms = 0.0
        self.speech_frame_count = 0
        self.overflow_frames = 0

    def record_accepted(self):
        self.unknown_streak = 0
        self._empty_backoff_ms = 0
        self._defer_until = None

    def record_rejected(self):
        self.unknown_streak += 1

    def record_empty(self):
        """Count an empty result and back off before the next threshold flush"""
        self.unknown_streak += 1
        if self._empty_backoff_ms:
            self._empty_backoff_ms = min(self._empty_backoff_ms * 2, self.settings.max_empty_backoff_ms)
        else:
            self._empty_backoff_ms = self.settings.empty_batch_backoff_ms
        self._defer_until = self.clock() + self._empty_backoff_ms / 1000.0
        logger.debug(
            "Empty batch backoff",
            backoff_ms=self._empty_backoff_ms,
            unknown_streak=self.unknown_streak,
        )
