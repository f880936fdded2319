"""
Session lifecycle management
Creates one SpeakerPipeline per speaker stream, routes audio to it, wires its
events to the notifier / transcript store and drains it on stop, disconnect
and shutdown
"""

import asyncio
import base64
import binascii
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import numpy as np
import structlog

from .config import Settings, settings as default_settings
from .errors import SessionLimitError, SessionNotFoundError
from .metrics import update_active_sessions
from .models import FrameMetadata, SessionInfo, StatusEvent, StatusKind, TranscriptSegment
from .notifier import RedisNotifier, RedisTranscriptStore
from .pipeline import SpeakerPipeline

logger = structlog.get_logger(__name__)

EventListener = Callable[[str, Any], Awaitable[None]]


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    STOPPING = "stopping"
    CLOSED = "closed"


class Session:
    def __init__(self, info: SessionInfo, pipeline: SpeakerPipeline, listener: Optional[EventListener] = None):
        self.info = info
        self.pipeline = pipeline
        self.listener = listener
        self.status = SessionStatus.CREATED
        self.started_at = time.time()
        self.drain_task: Optional[asyncio.Task] = None


def decode_chunk(chunk: str) -> bytes:
    """Decode a base64 audio chunk, tolerating data URLs and missing padding"""
    if chunk.startswith("data:"):
        chunk = chunk.split(",", 1)[1]
    missing_padding = len(chunk) % 4
    if missing_padding:
        chunk += "=" * (4 - missing_padding)
    return base64.b64decode(chunk)


class SessionManager:
    """Owns every live session. Sessions never share mutable state."""

    def __init__(
        self,
        provider,
        notifier: Optional[RedisNotifier] = None,
        store: Optional[RedisTranscriptStore] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.notifier = notifier
        self.store = store
        self.settings = config or default_settings
        self.clock = clock
        self.sessions: Dict[str, Session] = {}
        self._drains: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions

    def get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def start(self, info: SessionInfo, listener: Optional[EventListener] = None) -> Optional[SpeakerPipeline]:
        """Create and open a session; returns None when transcription is disabled"""
        if not getattr(self.provider, "configured", False):
            reason = getattr(self.provider, "reason", "provider_not_configured")
            logger.warning("Transcription disabled, session not created", session_id=info.session_id, reason=reason)
            event = StatusEvent(
                session_id=info.session_id,
                status=StatusKind.DISABLED,
                reason=reason,
                provider=getattr(self.provider, "name", None),
            )
            await self._deliver_status(event, info, listener)
            return None

        existing = self.sessions.get(info.session_id)
        if existing is not None:
            logger.info("Session already active", session_id=info.session_id)
            return existing.pipeline

        if len(self.sessions) >= self.settings.max_concurrent_sessions:
            raise SessionLimitError(
                f"Maximum concurrent sessions reached ({self.settings.max_concurrent_sessions})"
            )

        pipeline = SpeakerPipeline(info, self.provider, self.settings, self.clock)
        session = Session(info, pipeline, listener)
        self._wire(session)
        self.sessions[info.session_id] = session

        await pipeline.open()
        session.status = SessionStatus.ACTIVE
        update_active_sessions(len(self.sessions))

        logger.info(
            "✅ Session started",
            session_id=info.session_id,
            target_language=info.target_language,
            call_id=info.call_id,
            active_sessions=len(self.sessions),
        )
        return pipeline

    def _wire(self, session: Session):
        info = session.info

        async def on_final(segment: TranscriptSegment):
            if self.notifier:
                await self.notifier.publish_transcript(segment, info)
            if self.store and not segment.is_partial:
                await self.store.append(info.owner_id, info.call_id, segment)
            if session.listener:
                await session.listener("final", segment)

        async def on_status(event: StatusEvent):
            await self._deliver_status(event, info, session.listener)

        session.pipeline.on("final", on_final)
        session.pipeline.on("status", on_status)
        session.pipeline.on("error", on_status)

    async def _deliver_status(self, event: StatusEvent, info: SessionInfo, listener: Optional[EventListener]):
        if self.notifier:
            try:
                await self.notifier.publish_status(event, info)
            except Exception as e:
                logger.error("Failed to publish status", session_id=event.session_id, error=str(e))
        if listener:
            try:
                await listener("status", event)
            except Exception as e:
                logger.error("Status listener failed", session_id=event.session_id, error=str(e))

    async def push_audio(self, session_id: str, data: bytes, metadata: Optional[FrameMetadata] = None) -> bool:
        """Route one frame to its session. Errors are logged, never raised."""
        session = self.sessions.get(session_id)
        if session is None or session.status is not SessionStatus.ACTIVE:
            logger.debug("Audio for inactive session dropped", session_id=session_id)
            return False

        try:
            await session.pipeline.push_frame(data, metadata)
        except Exception as e:
            logger.error("Error handling audio frame", session_id=session_id, error=str(e), exc_info=True)
            return False
        return True

    async def push_samples(self, session_id: str, audio: np.ndarray, sample_rate: int, channels: int = 1) -> bool:
        """Route captured samples that still need resampling / downmixing"""
        session = self.sessions.get(session_id)
        if session is None or session.status is not SessionStatus.ACTIVE:
            return False

        try:
            await session.pipeline.push_samples(audio, sample_rate, channels)
        except Exception as e:
            logger.error("Error handling audio samples", session_id=session_id, error=str(e), exc_info=True)
            return False
        return True

    async def push_encoded(self, session_id: str, chunk: Any, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Decode a base64 chunk with optional metadata dict and route it"""
        if not isinstance(chunk, str) or not chunk:
            logger.warning("Missing or invalid audio chunk", session_id=session_id, chunk_type=type(chunk).__name__)
            return False

        try:
            data = decode_chunk(chunk)
        except (binascii.Error, ValueError) as e:
            logger.error("Audio decoding error", session_id=session_id, error=str(e))
            return False

        frame_metadata = None
        if metadata:
            try:
                frame_metadata = FrameMetadata(
                    rms_energy=metadata.get("rms_energy", metadata.get("rmsEnergy")),
                    duration_ms=metadata.get("duration_ms", metadata.get("durationMs")),
                    sample_count=metadata.get("sample_count", metadata.get("sampleCount")),
                    sample_rate=metadata.get("sample_rate", metadata.get("sampleRate")),
                )
            except ValueError as e:
                logger.warning("Ignoring invalid frame metadata", session_id=session_id, error=str(e))

        return await self.push_audio(session_id, data, frame_metadata)

    def begin_stop(self, session_id: str, reason: str = "stopped") -> Optional[asyncio.Task]:
        """Start draining a session without waiting for it. Returns None if it was not live."""
        session = self.sessions.get(session_id)
        if session is None or session.status in (SessionStatus.STOPPING, SessionStatus.CLOSED):
            logger.debug("Stop ignored, session not active", session_id=session_id)
            return None

        session.status = SessionStatus.STOPPING
        session.drain_task = asyncio.create_task(self._drain(session, reason))
        self._drains.add(session.drain_task)
        session.drain_task.add_done_callback(self._drains.discard)
        return session.drain_task

    async def _drain(self, session: Session, reason: str):
        session_id = session.info.session_id
        try:
            await session.pipeline.close(reason)
        except Exception as e:
            logger.error("Error closing session", session_id=session_id, error=str(e), exc_info=True)
        finally:
            session.status = SessionStatus.CLOSED
            self.sessions.pop(session_id, None)
            update_active_sessions(len(self.sessions))

        logger.info("Session stopped", session_id=session_id, reason=reason, active_sessions=len(self.sessions))

    async def stop(self, session_id: str, reason: str = "stopped") -> bool:
        """Drain and close a session.

        Returns False if this call did not start the stop. A stop that is
        already draining is still awaited, so returning means the drain is done.
        """
        task = self.begin_stop(session_id, reason)
        if task is None:
            session = self.sessions.get(session_id)
            if session is not None and session.drain_task is not None:
                await asyncio.shield(session.drain_task)
            return False
        await asyncio.shield(task)
        return True

    def begin_disconnect(self, connection_id: str) -> List[asyncio.Task]:
        """Start draining every session opened by a dropped connection"""
        session_ids = [
            session_id
            for session_id, session in self.sessions.items()
            if session.info.connection_id == connection_id
        ]
        if session_ids:
            logger.info("Connection dropped, closing sessions", connection_id=connection_id, sessions=session_ids)
        tasks = (self.begin_stop(sid, "disconnect") for sid in session_ids)
        return [task for task in tasks if task is not None]

    async def disconnect(self, connection_id: str) -> int:
        tasks = self.begin_disconnect(connection_id)
        if tasks:
            await asyncio.shield(asyncio.gather(*tasks))
        return len(tasks)

    async def wait_drained(self):
        """Wait for every stop started so far"""
        while self._drains:
            await asyncio.gather(*list(self._drains))

    async def shutdown(self):
        """Drain all live sessions, including stops already in flight"""
        for session_id in list(self.sessions):
            self.begin_stop(session_id, "shutdown")
        if self._drains:
            logger.info("Draining sessions for shutdown", count=len(self._drains))
        await self.wait_drained()

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [
            {
                "session_id": session_id,
                "status": session.status.value,
                "target_language": session.info.target_language,
                "call_id": session.info.call_id,
                "owner_id": session.info.owner_id,
                "uptime_seconds": round(time.time() - session.started_at, 1),
                "stats": session.pipeline.snapshot().model_dump(),
            }
            for session_id, session in self.sessions.items()
        ]
