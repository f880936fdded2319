"""Data models for the realtime transcription service"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


AUTO_LANGUAGE = "auto"
UNKNOWN_LANGUAGE = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FrameMetadata(BaseModel):
    """Client-side metrics attached to an audio frame"""
    model_config = ConfigDict(frozen=True)

    rms_energy: Optional[float] = None
    duration_ms: Optional[float] = None
    sample_count: Optional[int] = None
    sample_rate: Optional[int] = None


class Frame(BaseModel):
    """Immutable chunk of PCM16 mono samples with its energy metrics"""
    model_config = ConfigDict(frozen=True)

    data: bytes
    rms_energy: float
    duration_ms: float
    sample_count: int
    sample_rate: int = 16000
    peak: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.data)


class CandidateResult(BaseModel):
    """Result of one transcription attempt in one candidate language"""
    language: str
    text: str = ""
    word_count: int = 0
    char_count: int = 0
    score: float = 0.0
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text


class DetectionResult(BaseModel):
    """Outcome of a multi-language detection run over one flushed clip"""
    language: str
    text: str
    score: float = 0.0
    word_count: int = 0
    auto_detected: bool = False
    used_fallback: bool = False
    early_exit: bool = False
    attempts: List[CandidateResult] = []

    @property
    def is_empty(self) -> bool:
        return not self.text


class NormalizedTranscript(BaseModel):
    """Detection result after translation into the display language"""
    text: str
    language: str
    original_text: Optional[str] = None
    translated_text: Optional[str] = None
    dual_mode: bool = False


class TranscriptSegment(BaseModel):
    """Finalized transcript segment, never mutated after creation"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    language: str
    is_partial: bool = False
    auto_detected: bool = False
    original_text: Optional[str] = None
    translated_text: Optional[str] = None
    dual_mode: bool = False
    score: float = 0.0


class StatusKind(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"
    DEGRADED = "degraded"
    CLOSED = "closed"


class StatusEvent(BaseModel):
    """Lifecycle / diagnostic signal for a session"""
    session_id: str
    status: StatusKind
    reason: Optional[str] = None
    provider: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SessionInfo(BaseModel):
    """Routing information for a speaker session"""
    session_id: str
    target_language: str = AUTO_LANGUAGE
    owner_id: Optional[str] = None
    call_id: Optional[str] = None
    room_id: Optional[str] = None
    connection_id: Optional[str] = None


class ProviderTranscription(BaseModel):
    """Upstream transcription response"""
    transcript: str = ""
    detected_language: Optional[str] = None
    duration_seconds: Optional[float] = None


class AudioQuality(BaseModel):
    """Audio quality metrics for a clip"""
    samples: int
    duration_ms: float
    rms: float
    rms_db: float
    peak: int
    peak_db: float
    quality: str
    estimated_snr: float
    is_clipping: bool = False
    requires_normalization: bool = False


class SessionStatsSnapshot(BaseModel):
    session_id: str
    state: str
    batches: int = 0
    emitted: int = 0
    empty: int = 0
    rejected: int = 0
    duplicates: int = 0
    failed: int = 0
    avg_latency_ms: float = 0.0
    avg_score: float = 0.0
    languages: Dict[str, int] = {}
    provider_errors: int = 0
    rate_limits: int = 0
    degraded_translate: bool = False
    unknown_streak: int = 0
