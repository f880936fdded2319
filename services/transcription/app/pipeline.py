"""
Per-speaker transcription pipeline
Gates and batches incoming frames, runs language detection, translation and
filtering on each flushed batch, and fires transcript / status events
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import numpy as np
import structlog

from .audio_processor import AudioProcessor, pcm16_samples, pcm16_to_wav
from .batcher import AdaptiveBatcher, BatchSnapshot, FlushReason
from .config import Settings, settings as default_settings
from .errors import DetectionFailedError, ProviderNotConfiguredError
from .language_detector import LanguageDetector
from .metrics import SessionStats, record_batch
from .models import (
    DetectionResult,
    Frame,
    FrameMetadata,
    SessionInfo,
    SessionStatsSnapshot,
    StatusEvent,
    StatusKind,
    TranscriptSegment,
)
from .quality_filter import FilterVerdict, TranscriptFilter
from .translation import TranslationNormalizer

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class PipelineState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    PROCESSING = "processing"
    CLOSED = "closed"


class SpeakerPipeline:
    """One speaker's stream from raw frames to finalized transcript segments.

    At most one flush runs at a time. Frames that arrive while it runs keep
    accumulating into the (already cleared) buffer; when the flush finishes
    the triggers are evaluated again, so segments come out in flush order.

    Events (one handler each): ``open`` (SessionInfo), ``final``
    (TranscriptSegment), ``status`` and ``error`` (StatusEvent), ``close``
    (SessionStatsSnapshot).
    """

    EVENTS = ("open", "final", "status", "error", "close")

    def __init__(
        self,
        info: SessionInfo,
        provider,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.info = info
        self.session_id = info.session_id
        self.provider = provider
        self.settings = config or default_settings
        self.clock = clock

        self.stats = SessionStats()
        self.audio = AudioProcessor(self.settings)
        self.batcher = AdaptiveBatcher(self.settings, clock)
        self.detector = LanguageDetector(provider, self.settings, self.stats)
        self.normalizer = TranslationNormalizer(provider, self.settings, self.stats)
        self.filter = TranscriptFilter(self.settings, clock)

        self.state = PipelineState.IDLE
        self.frames_received = 0
        self.bytes_received = 0
        self.last_language: Optional[str] = None
        self.last_language_score = 0.0

        self._handlers: Dict[str, EventHandler] = {}
        self._flush_task: Optional[asyncio.Task] = None
        self._closing = False
        self._log = logger.bind(session_id=self.session_id)

    # Event registration

    def on(self, event: str, handler: EventHandler):
        """Register the handler for ``event``, replacing any previous one"""
        if event not in self.EVENTS:
            raise ValueError(f"Unknown pipeline event: {event}")
        self._handlers[event] = handler

    async def _emit(self, event: str, payload: Any):
        handler = self._handlers.get(event)
        if handler is None:
            return
        try:
            await handler(payload)
        except Exception as e:
            self._log.error("Event handler failed", pipeline_event=event, error=str(e), exc_info=True)

    async def _status(self, kind: StatusKind, reason: Optional[str] = None):
        event = StatusEvent(
            session_id=self.session_id,
            status=kind,
            reason=reason,
            provider=getattr(self.provider, "name", None),
        )
        await self._emit("error" if kind is StatusKind.ERROR else "status", event)

    # Lifecycle

    @property
    def processing(self) -> bool:
        return self._flush_task is not None

    @property
    def closed(self) -> bool:
        return self.state is PipelineState.CLOSED

    async def wait_idle(self):
        """Wait until no flush is in flight, including ones chained after it"""
        while self._flush_task is not None:
            await self._flush_task

    async def open(self):
        self._log.info("🎙️ Pipeline opened", target_language=self.info.target_language)
        await self._emit("open", self.info)
        await self._status(StatusKind.ACTIVE)

    async def close(self, reason: str = "stopped"):
        """Wait for the in-flight flush, drain what is left, then close. Safe to call twice."""
        if self.closed or self._closing:
            return
        self._closing = True
        self._log.info("Closing pipeline", reason=reason, processing=self.processing)

        await self.wait_idle()

        pending = self.audio.flush_pending()
        if pending is not None:
            self.batcher.add_frame(pending, evaluate=False)

        if not self.batcher.is_empty:
            if self.batcher.below_submit_floor():
                self._log.debug("Discarding short tail on close", bytes=self.batcher.accumulated_bytes)
                self.batcher.clear()
            else:
                await self._process(self.batcher.take(FlushReason.DRAIN))

        self.state = PipelineState.CLOSED
        summary = self.snapshot()
        self._log.info("🔚 Pipeline closed", reason=reason, **self.stats.summary())
        await self._status(StatusKind.CLOSED, reason)
        await self._emit("close", summary)

    # Ingress

    async def push_frame(self, data: bytes, metadata: Optional[FrameMetadata] = None):
        """Accept one PCM16 frame, with optional client-side metrics"""
        if self.closed or self._closing:
            self._log.debug("Ignoring frame for closing pipeline", size=len(data))
            return

        sample_rate = metadata.sample_rate if metadata and metadata.sample_rate else self.settings.sample_rate
        if sample_rate != self.settings.sample_rate:
            frames = self.audio.feed(pcm16_samples(data), sample_rate)
        else:
            frames = [self.audio.build_frame(data, metadata)]

        for frame in frames:
            self._accept(frame)

    async def push_samples(self, audio: np.ndarray, sample_rate: int, channels: int = 1):
        """Accept captured samples at any rate / channel count"""
        if self.closed or self._closing:
            return
        for frame in self.audio.feed(audio, sample_rate, channels):
            self._accept(frame)

    def _accept(self, frame: Frame):
        self.frames_received += 1
        self.bytes_received += frame.size

        result = self.batcher.add_frame(frame, evaluate=not self.processing)
        if result.included and self.state is PipelineState.IDLE:
            self.state = PipelineState.ACCUMULATING

        if result.flush_reason is not None:
            self._start_flush(result.flush_reason)

    # Flushing

    def _start_flush(self, reason: FlushReason):
        if self.batcher.below_submit_floor():
            self._log.debug(
                "Deferring flush of short buffer",
                reason=reason.value,
                bytes=self.batcher.accumulated_bytes,
            )
            record_batch("deferred")
            return

        snapshot = self.batcher.take(reason)
        self.state = PipelineState.PROCESSING
        self._flush_task = asyncio.create_task(self._run_flush(snapshot))

    async def _run_flush(self, snapshot: BatchSnapshot):
        try:
            await self._process(snapshot)
        finally:
            self._flush_task = None
            if not self._closing:
                self.state = PipelineState.IDLE if self.batcher.is_empty else PipelineState.ACCUMULATING
                self._evaluate_after_flush()

    def _evaluate_after_flush(self):
        reason = self.batcher.flush_reason()
        if (
            reason is None
            and not self.batcher.is_empty
            and self.batcher.silence_run_length >= self.settings.vad_max_silence_frames
        ):
            reason = FlushReason.ENDPOINT
        if reason is not None:
            self._start_flush(reason)

    async def _process(self, snapshot: BatchSnapshot):
        started = time.monotonic()
        outcome = "failed"
        self._log.info(
            "Flushing batch",
            reason=snapshot.reason.value,
            frames=snapshot.frame_count,
            duration_ms=round(snapshot.duration_ms),
            bytes=snapshot.size,
        )

        try:
            outcome = await self._transcribe(snapshot)
        except DetectionFailedError as e:
            self.batcher.record_rejected()
            self._log.error("Detection failed, batch abandoned", error=str(e))
            await self._status(StatusKind.ERROR, "detection_failed")
        except ProviderNotConfiguredError as e:
            self._log.error("Provider not configured", reason=e.reason)
            await self._status(StatusKind.DISABLED, e.reason)
        except Exception as e:
            self._log.error("Batch processing failed", error=str(e), exc_info=True)
            await self._status(StatusKind.ERROR, "processing_failed")
        finally:
            latency_ms = (time.monotonic() - started) * 1000.0
            self.stats.record(outcome, latency_ms)
            self._log.debug("Batch finished", outcome=outcome, latency_ms=round(latency_ms))

    async def _transcribe(self, snapshot: BatchSnapshot) -> str:
        quality = self.audio.analyze(snapshot.pcm)
        self._log.debug(
            "Batch audio quality",
            quality=quality.quality,
            rms_db=quality.rms_db,
            peak_db=quality.peak_db,
            snr=quality.estimated_snr,
        )
        if quality.rms < self.settings.flush_min_rms:
            self._log.debug("Discarding low-energy batch", rms=quality.rms)
            return "discarded"

        pcm = snapshot.pcm
        if self.settings.enable_normalization:
            pcm = self.audio.normalize(pcm, quality)
        wav = pcm16_to_wav(pcm, self.settings.sample_rate)

        was_degraded = self.normalizer.degraded
        if was_degraded:
            detection = await self.detector.transcribe_in(wav, self.settings.fallback_language)
        else:
            detection = await self.detector.detect(
                wav,
                self.info.target_language,
                last_language=self._cached_language(),
            )

        verdict = self.filter.check(detection.text, detection.language)
        if verdict is FilterVerdict.RETRY_FALLBACK:
            detection = await self._retry_unknown(wav, detection)
            verdict = self.filter.check(detection.text, detection.language, allow_retry=False)

        if verdict is FilterVerdict.EMPTY:
            self.batcher.record_empty()
            return "empty"
        if verdict.rejected:
            self.batcher.record_rejected()
            return "rejected"

        normalized = await self.normalizer.normalize(detection, self.info.target_language)
        if self.normalizer.degraded and not was_degraded:
            await self._status(StatusKind.DEGRADED, "translation_failures")

        now = self.clock()
        if self.filter.is_duplicate(normalized.text, now):
            return "duplicate"

        self.filter.accept(normalized.text, now)
        self.batcher.record_accepted()
        if detection.auto_detected and not detection.used_fallback:
            self.last_language = detection.language
            self.last_language_score = detection.score

        segment = TranscriptSegment(
            session_id=self.session_id,
            text=normalized.text,
            language=normalized.language,
            auto_detected=detection.auto_detected,
            original_text=normalized.original_text,
            translated_text=normalized.translated_text,
            dual_mode=normalized.dual_mode,
            score=detection.score,
        )
        self.stats.record_emitted(segment.language, detection.score)
        self._log.info(
            "📝 Transcript",
            language=segment.language,
            dual_mode=segment.dual_mode,
            text=segment.text[:80],
        )
        await self._emit("final", segment)
        return "emitted"

    async def _retry_unknown(self, wav: bytes, detection: DetectionResult) -> DetectionResult:
        fallback = self.settings.fallback_language
        self._log.info("Retrying unknown-language transcript in fallback language", fallback=fallback)
        try:
            retry = await self.detector.transcribe_in(wav, fallback)
        except DetectionFailedError as e:
            self._log.warning("Fallback retry failed, keeping original", error=str(e))
            return detection
        if retry.is_empty:
            return detection
        return retry.model_copy(update={"auto_detected": detection.auto_detected, "used_fallback": True})

    def _cached_language(self) -> Optional[str]:
        if self.last_language and self.last_language_score >= self.settings.cache_confidence_score:
            return self.last_language
        return None

    def snapshot(self) -> SessionStatsSnapshot:
        return SessionStatsSnapshot(
            session_id=self.session_id,
            state=self.state.value,
            degraded_translate=self.normalizer.degraded,
            unknown_streak=self.batcher.unknown_streak,
            **self.stats.summary(),
        )
