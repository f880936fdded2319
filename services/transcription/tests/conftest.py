"""Shared fixtures: scripted provider, recording collaborators, settings factory."""

import asyncio
import math
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pytest

from app.config import Settings
from app.models import FrameMetadata, ProviderTranscription

Scripted = Union[str, ProviderTranscription, Exception]


def tone(rms: float = 2000.0, samples: int = 4096, sample_rate: int = 16000) -> bytes:
    """PCM16 sine with the requested RMS on the int16 scale"""
    t = np.arange(samples)
    wave = np.sin(2 * np.pi * 440 * t / sample_rate) * rms * math.sqrt(2)
    return np.round(wave).astype("<i2").tobytes()


def frame_metadata(rms: float = 2000.0, duration_ms: float = 200.0) -> FrameMetadata:
    return FrameMetadata(rms_energy=rms, duration_ms=duration_ms)


async def feed_frames(target, count: int, rms: float = 2000.0, actual_rms: Optional[float] = None):
    """Push ``count`` 200 ms frames of 8192 bytes into a pipeline"""
    data = tone(rms if actual_rms is None else actual_rms)
    for _ in range(count):
        await target.push_frame(data, frame_metadata(rms))


class FakeProvider:
    """Provider double with per-language scripted responses.

    Each language maps to a list consumed in order; the last entry repeats.
    Unscripted languages return an empty transcript.
    """

    name = "fake"
    configured = True

    def __init__(
        self,
        responses: Optional[Dict[str, Union[Scripted, List[Scripted]]]] = None,
        translations: Optional[Dict[str, Any]] = None,
        translate_error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.responses: Dict[str, List[Scripted]] = {
            language: list(value) if isinstance(value, list) else [value]
            for language, value in (responses or {}).items()
        }
        self.translations = translations or {}
        self.translate_error = translate_error
        self.delay = delay
        self.calls: List[str] = []
        self.translate_calls: List[Tuple[str, str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def _next(self, language: str) -> Scripted:
        queue = self.responses.get(language)
        if not queue:
            return ""
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def transcribe(self, audio: bytes, language: str) -> ProviderTranscription:
        self.calls.append(language)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self._next(language)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, ProviderTranscription):
                return item
            return ProviderTranscription(transcript=item, detected_language=language)
        finally:
            self.in_flight -= 1

    async def translate(self, text: str, source_language: str, target_language: str) -> Any:
        self.translate_calls.append((text, source_language, target_language))
        if self.translate_error is not None:
            raise self.translate_error
        return self.translations.get(text, "")

    async def close(self):
        self.closed = True


class RecordingNotifier:
    def __init__(self):
        self.transcripts = []
        self.statuses = []

    async def publish_transcript(self, segment, info=None):
        self.transcripts.append(segment)

    async def publish_status(self, event, info=None):
        self.statuses.append(event)


class RecordingStore:
    def __init__(self):
        self.appended = []

    async def append(self, owner_id, call_id, segment) -> bool:
        self.appended.append((owner_id, call_id, segment))
        return True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def factory(**overrides) -> Settings:
        values = {
            "_env_file": None,
            "sarvam_api_key": "test-key",
            "api_delay_ms": 0,
            "rate_limit_delay_ms": 0,
            "candidate_languages": ["en-IN"],
            "max_languages": 1,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()
