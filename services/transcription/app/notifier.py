"""Outbound collaborators: transcript/status fan-out and transcript persistence"""

import json
from typing import Optional

import redis.asyncio as redis
import structlog

from .config import Settings, settings as default_settings
from .models import SessionInfo, StatusEvent, TranscriptSegment

logger = structlog.get_logger(__name__)


def segment_payload(segment: TranscriptSegment) -> dict:
    payload = {
        "session_id": segment.session_id,
        "text": segment.text,
        "timestamp": segment.timestamp.isoformat(),
        "language": segment.language,
        "is_partial": segment.is_partial,
        "auto_detected": segment.auto_detected,
    }
    if segment.dual_mode:
        payload.update({
            "original_text": segment.original_text,
            "translated_text": segment.translated_text,
            "dual_mode": True,
        })
    return payload


def status_payload(event: StatusEvent) -> dict:
    return {
        "session_id": event.session_id,
        "status": event.status.value,
        "reason": event.reason,
        "provider": event.provider,
        "timestamp": event.timestamp.isoformat(),
    }


def routing(info: Optional[SessionInfo]) -> dict:
    if info is None:
        return {}
    return {
        key: value
        for key, value in {
            "owner_id": info.owner_id,
            "call_id": info.call_id,
            "room_id": info.room_id,
            "connection_id": info.connection_id,
        }.items()
        if value is not None
    }


class RedisNotifier:
    """Publishes transcript and status events on the output channel"""

    def __init__(self, redis_client: redis.Redis, config: Optional[Settings] = None):
        self.redis = redis_client
        self.channel = (config or default_settings).output_channel

    async def publish_transcript(self, segment: TranscriptSegment, info: Optional[SessionInfo] = None):
        message = {"type": "transcript:new", **routing(info), "data": segment_payload(segment)}
        await self.redis.publish(self.channel, json.dumps(message, ensure_ascii=False))

    async def publish_status(self, event: StatusEvent, info: Optional[SessionInfo] = None):
        message = {"type": "transcript:status", **routing(info), "data": status_payload(event)}
        await self.redis.publish(self.channel, json.dumps(message))
        logger.debug("Status published", session_id=event.session_id, status=event.status.value)


class RedisTranscriptStore:
    """Appends final segments to the per-call, per-owner transcript list"""

    def __init__(self, redis_client: redis.Redis, config: Optional[Settings] = None):
        config = config or default_settings
        self.redis = redis_client
        self.prefix = config.transcript_key_prefix
        self.ttl_seconds = config.transcript_ttl_seconds

    def key(self, call_id: str, owner_id: str) -> str:
        return f"{self.prefix}{call_id}:{owner_id}"

    async def append(self, owner_id: Optional[str], call_id: Optional[str], segment: TranscriptSegment) -> bool:
        if segment.is_partial:
            return False
        if not owner_id or not call_id:
            logger.debug("Segment not persisted, no owner/call", session_id=segment.session_id)
            return False

        key = self.key(call_id, owner_id)
        await self.redis.rpush(key, json.dumps(segment_payload(segment), ensure_ascii=False))
        if self.ttl_seconds:
            await self.redis.expire(key, self.ttl_seconds)
        return True
