"""Energy-based voice activity gate"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from .config import Settings, settings as default_settings

logger = structlog.get_logger(__name__)


class FrameDecision(str, Enum):
    DROPPED = "dropped"
    TRAILING_SILENCE = "trailing_silence"
    SPEECH = "speech"


@dataclass(frozen=True)
class GateResult:
    decision: FrameDecision
    silence_run_length: int
    endpoint: bool = False

    @property
    def include(self) -> bool:
        return self.decision is not FrameDecision.DROPPED

    @property
    def is_speech(self) -> bool:
        return self.decision is FrameDecision.SPEECH


class VoiceActivityGate:
    """Per-frame speech / trailing-silence / drop decision on RMS energy.

    Frames at or above ``vad_speech_threshold`` are speech. Frames below it but
    above ``vad_energy_floor`` are kept for up to ``vad_hangover_frames`` after
    the last speech frame so utterance endings are not clipped. Everything else
    is dropped but still extends the silence run; once the run reaches
    ``vad_max_silence_frames`` with audio buffered, the result asks for an
    endpoint flush.
    """

    def __init__(self, config: Optional[Settings] = None):
        config = config or default_settings
        self.energy_floor = config.vad_energy_floor
        self.speech_threshold = config.vad_speech_threshold
        self.hangover_frames = config.vad_hangover_frames
        self.max_silence_frames = config.vad_max_silence_frames
        self.reset()

    def reset(self):
        self.silence_run_length = 0
        self._speech_seen = False

    def classify(self, rms: float, buffer_has_audio: bool) -> GateResult:
        if rms >= self.speech_threshold:
            self.silence_run_length = 0
            self._speech_seen = True
            return GateResult(FrameDecision.SPEECH, 0)

        self.silence_run_length += 1

        if (
            rms >= self.energy_floor
            and self._speech_seen
            and self.silence_run_length <= self.hangover_frames
        ):
            decision = FrameDecision.TRAILING_SILENCE
        else:
            decision = FrameDecision.DROPPED
            if self.silence_run_length % 5 == 0:
                logger.debug(
                    "Silence frames",
                    rms=round(rms, 1),
                    consecutive=self.silence_run_length,
                )

        endpoint = buffer_has_audio and self.silence_run_length >= self.max_silence_frames
        return GateResult(decision, self.silence_run_length, endpoint)
