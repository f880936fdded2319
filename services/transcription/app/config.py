"""Configuration settings for the Transcription service"""

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


# Latency presets: max languages tested, minimum batch duration, early-exit score
LATENCY_PRESETS: Dict[str, Dict[str, int]] = {
    "accuracy": {"max_languages": 4, "min_batch_duration_ms": 1200, "early_exit_score": 180},
    "balanced": {"max_languages": 3, "min_batch_duration_ms": 2000, "early_exit_score": 150},
    "speed": {"max_languages": 2, "min_batch_duration_ms": 1000, "early_exit_score": 140},
}


class Settings(BaseSettings):
    """Application settings"""

    # Server
    port: int = 8002
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    # Redis
    redis_url: str = "redis://redis:6379"
    redis_max_connections: int = 50
    input_channel: str = "transcription_input"
    output_channel: str = "transcription_output"
    transcript_key_prefix: str = "transcript:"
    transcript_ttl_seconds: int = 7 * 24 * 3600

    # Upstream STT / translation provider
    transcription_provider: str = "sarvam"
    sarvam_api_key: Optional[str] = None
    sarvam_base_url: str = "https://api.sarvam.ai"
    stt_model: str = "saarika:v2.5"
    translate_model: str = "mayura:v1"
    translate_mode: str = "formal"
    speaker_gender: str = "Female"
    provider_timeout_seconds: float = 60.0
    translate_timeout_seconds: float = 10.0

    # Audio format
    sample_rate: int = 16000
    frame_duration_ms: int = 200
    provider_max_duration_ms: int = 30000

    # Voice activity gate (RMS on the int16 scale)
    vad_energy_floor: float = 30.0
    vad_speech_threshold: float = 120.0
    vad_hangover_frames: int = 2
    vad_max_silence_frames: int = 5

    # Batching
    latency_mode: str = "accuracy"
    min_batch_duration_ms: Optional[int] = None
    min_flush_bytes: int = 40000
    min_speech_frames: int = 2
    escalation_limit: int = 2
    escalated_duration_ms: int = 800
    escalated_flush_bytes: int = 24000
    max_batch_duration_ms: int = 15000
    max_batch_bytes: int = 400000
    min_submit_bytes: int = 9600  # ~300ms @ 16kHz mono
    flush_min_rms: float = 100.0
    empty_batch_backoff_ms: int = 300
    max_empty_backoff_ms: int = 1500

    # Normalization before submission
    enable_normalization: bool = True
    normalization_target_rms: float = 7000.0
    normalization_min_rms: float = 3000.0
    normalization_max_gain: float = 5.0

    # Multi-language detection
    candidate_languages: List[str] = [
        "en-IN", "hi-IN", "te-IN", "ta-IN", "kn-IN", "ml-IN",
        "bn-IN", "mr-IN", "gu-IN", "pa-IN", "od-IN",
    ]
    max_languages: Optional[int] = None
    early_exit_score: Optional[float] = None
    early_exit_min_words: int = 4
    api_delay_ms: int = 80
    rate_limit_delay_ms: int = 2000
    fallback_language: str = "en-IN"
    empty_break_threshold: int = 0  # 0 disables
    use_last_language_cache: bool = True
    cache_confidence_score: float = 150.0

    # Translation
    target_language: str = "en-IN"
    similarity_threshold: float = 0.8
    similarity_min_chars: int = 8
    translate_error_threshold: int = 3

    # Transcript filter
    min_word_count: int = 2
    min_text_chars: int = 8
    long_token_chars: int = 5
    unknown_min_chars: int = 20
    filler_words: List[str] = [
        "yes", "yeah", "ya", "ok", "okay", "hmm", "hm", "um", "uh", "haan", "ji",
    ]
    filler_window_ms: int = 4000
    duplicate_window_ms: int = 2500

    # Sessions
    max_concurrent_sessions: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    def detection_preset(self) -> Dict[str, int]:
        return LATENCY_PRESETS.get(self.latency_mode.lower(), LATENCY_PRESETS["accuracy"])

    @property
    def effective_min_batch_duration_ms(self) -> int:
        if self.min_batch_duration_ms is not None:
            return self.min_batch_duration_ms
        return self.detection_preset()["min_batch_duration_ms"]

    @property
    def effective_max_languages(self) -> int:
        if self.max_languages is not None:
            return self.max_languages
        return self.detection_preset()["max_languages"]

    @property
    def effective_early_exit_score(self) -> float:
        if self.early_exit_score is not None:
            return self.early_exit_score
        return float(self.detection_preset()["early_exit_score"])

    @property
    def bytes_per_ms(self) -> float:
        """PCM16 mono bytes per millisecond of audio"""
        return self.sample_rate * 2 / 1000.0


settings = Settings()
