"""Tests for candidate-language detection and transcript scoring."""

import pytest

from app.errors import DetectionFailedError, ProviderError, RateLimitError
from app.language_detector import LanguageDetector, score_transcript, script_matches
from app.models import ProviderTranscription
from conftest import FakeProvider

WAV = b"RIFF-test-clip"
ENGLISH = "I will join the meeting in five minutes"


def rate_limited() -> RateLimitError:
    return RateLimitError("rate limited", operation="transcribe", status_code=429)


def test_more_words_score_higher() -> None:
    assert score_transcript("the quick brown fox jumps", "en-IN") > score_transcript("the fox", "en-IN")
    assert score_transcript("   ", "en-IN") == 0.0


def test_script_match_bonus() -> None:
    text = "नमस्ते आप कैसे हैं"

    assert script_matches(text, "hi-IN")
    assert not script_matches(text, "ta-IN")
    assert score_transcript(text, "hi-IN") > score_transcript(text, "ta-IN")
    assert script_matches(ENGLISH, "en-IN")


def test_repeated_characters_penalised() -> None:
    assert score_transcript("aaaaaaa bbbbbbb", "en-IN") < score_transcript("hello there", "en-IN")


@pytest.mark.asyncio
async def test_early_exit_skips_remaining_candidates(make_settings) -> None:
    provider = FakeProvider({"hi-IN": "हाँ जी", "en-IN": ENGLISH, "te-IN": "ఏదో"})
    config = make_settings(
        candidate_languages=["hi-IN", "en-IN", "te-IN"],
        max_languages=3,
        early_exit_score=180,
    )

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    assert provider.calls == ["hi-IN", "en-IN"]
    assert result.language == "en-IN"
    assert result.text == ENGLISH
    assert result.early_exit
    assert result.auto_detected


@pytest.mark.asyncio
async def test_highest_score_wins_without_early_exit(make_settings) -> None:
    provider = FakeProvider({"te-IN": "one two", "ta-IN": "one two three"})
    config = make_settings(candidate_languages=["te-IN", "ta-IN"], max_languages=2)

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    assert provider.calls == ["te-IN", "ta-IN"]
    assert result.language == "ta-IN"
    assert not result.early_exit


@pytest.mark.asyncio
async def test_tie_goes_to_first_candidate(make_settings) -> None:
    provider = FakeProvider({"te-IN": "ok fine", "ta-IN": "ok fine"})
    config = make_settings(candidate_languages=["te-IN", "ta-IN"], max_languages=2)

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    assert result.language == "te-IN"


@pytest.mark.asyncio
async def test_max_languages_bounds_the_loop(make_settings) -> None:
    provider = FakeProvider()
    config = make_settings(candidate_languages=["hi-IN", "te-IN", "ta-IN", "kn-IN"], max_languages=2)

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    # two candidates, then the fallback language
    assert provider.calls == ["hi-IN", "te-IN", "en-IN"]
    assert result.used_fallback
    assert result.is_empty


@pytest.mark.asyncio
async def test_rate_limit_retried_once(make_settings) -> None:
    provider = FakeProvider({"hi-IN": [rate_limited(), "नमस्ते दोस्तों आप कैसे हैं"]})
    config = make_settings(candidate_languages=["hi-IN"], max_languages=1)
    detector = LanguageDetector(provider, config)

    result = await detector.detect(WAV, "auto")

    assert provider.calls == ["hi-IN", "hi-IN"]
    assert result.language == "hi-IN"
    assert detector.stats.rate_limits == 1


@pytest.mark.asyncio
async def test_second_rate_limit_counts_as_empty(make_settings) -> None:
    provider = FakeProvider({
        "hi-IN": [rate_limited(), rate_limited()],
        "en-IN": ENGLISH,
    })
    config = make_settings(candidate_languages=["hi-IN", "en-IN"], max_languages=2)

    detector = LanguageDetector(provider, config)

    result = await detector.detect(WAV, "auto")

    assert provider.calls == ["hi-IN", "hi-IN", "en-IN"]
    assert result.language == "en-IN"
    assert result.attempts[0].error is not None
    assert detector.stats.rate_limits == 2
    assert detector.stats.provider_errors == 2


@pytest.mark.asyncio
async def test_candidate_error_does_not_abort_detection(make_settings) -> None:
    provider = FakeProvider({
        "hi-IN": ProviderError("boom", operation="transcribe", status_code=500),
        "te-IN": "మీరు ఎలా ఉన్నారు ఈ రోజు",
    })
    config = make_settings(candidate_languages=["hi-IN", "te-IN"], max_languages=2)

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    assert result.language == "te-IN"
    assert [a.language for a in result.attempts] == ["hi-IN", "te-IN"]


@pytest.mark.asyncio
async def test_all_empty_falls_back_to_fixed_language(make_settings) -> None:
    provider = FakeProvider({"en-IN": "hello there friend"})
    config = make_settings(candidate_languages=["hi-IN", "te-IN"], max_languages=2, fallback_language="en-IN")

    result = await LanguageDetector(provider, config).detect(WAV, "auto")

    assert provider.calls == ["hi-IN", "te-IN", "en-IN"]
    assert result.used_fallback
    assert result.language == "en-IN"
    assert result.text == "hello there friend"


@pytest.mark.asyncio
async def test_fallback_failure_raises(make_settings) -> None:
    provider = FakeProvider({"en-IN": ProviderError("down", operation="transcribe")})
    config = make_settings(candidate_languages=["hi-IN"], max_languages=1, fallback_language="en-IN")

    with pytest.raises(DetectionFailedError):
        await LanguageDetector(provider, config).detect(WAV, "auto")


@pytest.mark.asyncio
async def test_fixed_language_transcribes_once(make_settings) -> None:
    provider = FakeProvider({"ta-IN": "வணக்கம் எப்படி இருக்கிறீர்கள்"})
    config = make_settings(candidate_languages=["en-IN", "hi-IN", "ta-IN"], max_languages=3)

    result = await LanguageDetector(provider, config).detect(WAV, "ta-IN")

    assert provider.calls == ["ta-IN"]
    assert result.language == "ta-IN"
    assert not result.auto_detected


def test_last_language_tested_first(make_settings) -> None:
    config = make_settings(candidate_languages=["en-IN", "hi-IN", "te-IN", "ta-IN"], max_languages=3)
    detector = LanguageDetector(FakeProvider(), config)

    assert detector.candidate_order("ta-IN") == ["ta-IN", "en-IN", "hi-IN"]
    assert detector.candidate_order() == ["en-IN", "hi-IN", "te-IN"]


@pytest.mark.asyncio
async def test_provider_language_label_is_used(make_settings) -> None:
    provider = FakeProvider({
        "en-IN": ProviderTranscription(transcript="some noisy words here", detected_language="unknown"),
    })

    result = await LanguageDetector(provider, make_settings()).detect(WAV, "auto")

    assert result.language == "unknown"
