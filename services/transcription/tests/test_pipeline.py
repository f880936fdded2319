"""Tests for the per-speaker pipeline: flush scheduling, ordering, draining and scenarios."""

import pytest

from app.errors import ProviderError
from app.models import ProviderTranscription, SessionInfo, StatusKind
from app.pipeline import PipelineState, SpeakerPipeline
from conftest import FakeProvider, feed_frames


def make_pipeline(provider, config, clock=None, target_language="auto") -> SpeakerPipeline:
    info = SessionInfo(session_id="speaker-1", target_language=target_language)
    if clock is None:
        return SpeakerPipeline(info, provider, config)
    return SpeakerPipeline(info, provider, config, clock=clock)


class Recorder:
    def __init__(self, pipeline: SpeakerPipeline):
        self.finals = []
        self.statuses = []
        self.errors = []
        self.closes = []
        pipeline.on("final", self._final)
        pipeline.on("status", self._status)
        pipeline.on("error", self._error)
        pipeline.on("close", self._close)

    async def _final(self, segment):
        self.finals.append(segment)

    async def _status(self, event):
        self.statuses.append(event)

    async def _error(self, event):
        self.errors.append(event)

    async def _close(self, snapshot):
        self.closes.append(snapshot)


@pytest.mark.asyncio
async def test_sixth_frame_triggers_single_flush(make_settings) -> None:
    provider = FakeProvider({"en-IN": "hello there everyone"})
    pipeline = make_pipeline(provider, make_settings(min_batch_duration_ms=1200, min_flush_bytes=40000))
    events = Recorder(pipeline)

    await feed_frames(pipeline, 5)
    assert not pipeline.processing
    assert pipeline.state is PipelineState.ACCUMULATING

    await feed_frames(pipeline, 1)
    assert pipeline.processing
    assert pipeline.batcher.is_empty

    await pipeline.wait_idle()

    assert provider.calls == ["en-IN"]
    assert [s.text for s in events.finals] == ["hello there everyone"]
    assert pipeline.state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_flushes_never_overlap_and_keep_order(make_settings) -> None:
    provider = FakeProvider(
        {"en-IN": ["first batch of words here", "second batch of words here"]},
        delay=0.05,
    )
    pipeline = make_pipeline(provider, make_settings(min_batch_duration_ms=1200, min_flush_bytes=40000))
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    assert pipeline.processing
    await feed_frames(pipeline, 6)  # arrives while the first flush is in flight
    assert pipeline.batcher.frame_count == 6

    await pipeline.wait_idle()

    assert provider.max_in_flight == 1
    assert [s.text for s in events.finals] == ["first batch of words here", "second batch of words here"]


@pytest.mark.asyncio
async def test_close_drains_buffered_audio(make_settings) -> None:
    provider = FakeProvider({"en-IN": "last words before hanging up"})
    pipeline = make_pipeline(provider, make_settings())
    events = Recorder(pipeline)

    await feed_frames(pipeline, 3)
    assert not pipeline.processing

    await pipeline.close()

    assert [s.text for s in events.finals] == ["last words before hanging up"]
    assert pipeline.state is PipelineState.CLOSED
    assert events.statuses[-1].status is StatusKind.CLOSED
    assert events.closes[0].emitted == 1


@pytest.mark.asyncio
async def test_close_waits_for_in_flight_flush(make_settings) -> None:
    provider = FakeProvider({"en-IN": ["first batch of words here", "tail of the call here"]}, delay=0.05)
    pipeline = make_pipeline(provider, make_settings())
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    await feed_frames(pipeline, 2)
    assert pipeline.processing

    await pipeline.close()

    assert [s.text for s in events.finals] == ["first batch of words here", "tail of the call here"]
    assert not pipeline.processing


@pytest.mark.asyncio
async def test_short_tail_discarded_on_close(make_settings) -> None:
    provider = FakeProvider({"en-IN": "should never be requested"})
    pipeline = make_pipeline(provider, make_settings(min_submit_bytes=9600))

    await feed_frames(pipeline, 1)  # 8192 bytes
    await pipeline.close()

    assert provider.calls == []


@pytest.mark.asyncio
async def test_double_close_is_noop(make_settings) -> None:
    pipeline = make_pipeline(FakeProvider(), make_settings())
    events = Recorder(pipeline)

    await pipeline.close()
    await pipeline.close()

    assert len(events.closes) == 1

    await feed_frames(pipeline, 6)
    assert pipeline.frames_received == 0


@pytest.mark.asyncio
async def test_low_energy_batch_is_discarded(make_settings) -> None:
    provider = FakeProvider({"en-IN": "should never be requested"})
    pipeline = make_pipeline(provider, make_settings(flush_min_rms=100))

    # client metadata claims speech but the samples are near-silent
    await feed_frames(pipeline, 6, rms=2000, actual_rms=40)
    await pipeline.wait_idle()

    assert provider.calls == []
    assert pipeline.stats.batches == 1


@pytest.mark.asyncio
async def test_repeated_okay_emitted_once(make_settings, clock) -> None:
    provider = FakeProvider({"en-IN": "okay"})
    pipeline = make_pipeline(provider, make_settings(), clock=clock)
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()
    clock.advance(1.5)
    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert len(provider.calls) == 2
    assert [s.text for s in events.finals] == ["okay"]
    assert pipeline.stats.duplicates == 1


@pytest.mark.asyncio
async def test_short_unknown_language_rejected(make_settings) -> None:
    provider = FakeProvider({"en-IN": ProviderTranscription(transcript="noisy text", detected_language="unknown")})
    pipeline = make_pipeline(provider, make_settings(fallback_language="hi-IN"))
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert provider.calls == ["en-IN"]
    assert events.finals == []
    assert pipeline.batcher.unknown_streak == 1


@pytest.mark.asyncio
async def test_long_unknown_language_retried_in_fallback(make_settings) -> None:
    hindi = "यह असली भाषण है"
    provider = FakeProvider(
        {
            "en-IN": ProviderTranscription(transcript="this could be real speech", detected_language="unknown"),
            "hi-IN": hindi,
        },
        translations={hindi: "This is real speech"},
    )
    pipeline = make_pipeline(provider, make_settings(fallback_language="hi-IN"))
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert provider.calls == ["en-IN", "hi-IN"]
    assert len(events.finals) == 1
    segment = events.finals[0]
    assert segment.dual_mode
    assert segment.original_text == hindi
    assert segment.text == "This is real speech"


@pytest.mark.asyncio
async def test_translation_failures_degrade_to_fallback_language(make_settings) -> None:
    sentences = [
        "पहला वाक्य यहाँ है",
        "दूसरा वाक्य यहाँ है",
        "तीसरा वाक्य यहाँ है",
        "चौथा वाक्य यहाँ है",
        "पाँचवाँ वाक्य यहाँ है",
    ]
    provider = FakeProvider(
        {"hi-IN": sentences, "en-IN": "direct english transcript here"},
        translate_error=ProviderError("translate down", operation="translate", status_code=503),
    )
    config = make_settings(
        candidate_languages=["hi-IN"],
        fallback_language="en-IN",
        translate_error_threshold=3,
    )
    pipeline = make_pipeline(provider, config)
    events = Recorder(pipeline)

    for _ in range(4):
        await feed_frames(pipeline, 6)
        await pipeline.wait_idle()

    assert pipeline.normalizer.degraded
    assert len(provider.translate_calls) == 4
    assert any(e.status is StatusKind.DEGRADED for e in events.statuses)
    assert [s.text for s in events.finals] == sentences[:4]

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert provider.calls[-1] == "en-IN"
    assert len(provider.translate_calls) == 4
    assert events.finals[-1].text == "direct english transcript here"
    assert events.finals[-1].language == "en-IN"


@pytest.mark.asyncio
async def test_detection_failure_clears_buffer_and_reports_error(make_settings) -> None:
    provider = FakeProvider({"en-IN": ProviderError("down", operation="transcribe", status_code=500)})
    pipeline = make_pipeline(provider, make_settings(candidate_languages=["hi-IN"], fallback_language="en-IN"))
    events = Recorder(pipeline)

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert provider.calls == ["hi-IN", "en-IN"]
    assert events.finals == []
    assert [e.reason for e in events.errors] == ["detection_failed"]
    assert pipeline.batcher.is_empty
    assert pipeline.stats.failed == 1


@pytest.mark.asyncio
async def test_confident_language_tested_first_next_time(make_settings) -> None:
    telugu = "మీరు ఎలా ఉన్నారు ఈ రోజు చాలా బాగుంది"
    provider = FakeProvider({"te-IN": telugu})
    config = make_settings(candidate_languages=["en-IN", "hi-IN", "te-IN"], max_languages=3, cache_confidence_score=150)
    pipeline = make_pipeline(provider, config)

    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()
    assert provider.calls == ["en-IN", "hi-IN", "te-IN"]
    assert pipeline.last_language == "te-IN"

    provider.calls.clear()
    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()
    assert provider.calls[0] == "te-IN"


@pytest.mark.asyncio
async def test_handler_errors_do_not_break_pipeline(make_settings) -> None:
    provider = FakeProvider({"en-IN": "hello there everyone"})
    pipeline = make_pipeline(provider, make_settings())

    async def broken(_segment):
        raise RuntimeError("subscriber went away")

    pipeline.on("final", broken)
    await feed_frames(pipeline, 6)
    await pipeline.wait_idle()

    assert pipeline.stats.emitted == 1


def test_unknown_event_rejected(make_settings) -> None:
    pipeline = make_pipeline(FakeProvider(), make_settings())

    with pytest.raises(ValueError):
        pipeline.on("partial-ish", lambda _: None)
