"""Tests for transcript content checks and duplicate suppression."""

from app.quality_filter import FilterVerdict, TranscriptFilter, normalize_text


def test_empty_text_rejected(make_settings) -> None:
    f = TranscriptFilter(make_settings())

    assert f.check("", "en-IN") is FilterVerdict.EMPTY
    assert f.check("   ", "en-IN") is FilterVerdict.EMPTY


def test_short_fragment_rejected(make_settings) -> None:
    assert TranscriptFilter(make_settings()).check("hi", "en-IN") is FilterVerdict.TOO_SHORT


def test_long_single_token_compensates(make_settings) -> None:
    f = TranscriptFilter(make_settings(min_text_chars=8, long_token_chars=5))

    assert f.check("नमस्कार", "mr-IN") is FilterVerdict.ACCEPT


def test_filler_word_is_not_too_short(make_settings) -> None:
    assert TranscriptFilter(make_settings()).check("okay", "en-IN") is FilterVerdict.ACCEPT


def test_short_unknown_language_rejected(make_settings) -> None:
    verdict = TranscriptFilter(make_settings(unknown_min_chars=20)).check("noisy text", "unknown")

    assert verdict is FilterVerdict.UNKNOWN_SHORT
    assert verdict.rejected


def test_long_unknown_language_retried_once(make_settings) -> None:
    f = TranscriptFilter(make_settings(unknown_min_chars=20))
    text = "this could be real speech"

    assert len(text) == 25
    assert f.check(text, "unknown") is FilterVerdict.RETRY_FALLBACK
    assert f.check(text, "unknown", allow_retry=False) is FilterVerdict.ACCEPT


def test_repeated_filler_suppressed_within_window(make_settings, clock) -> None:
    f = TranscriptFilter(make_settings(filler_window_ms=4000), clock=clock)
    f.accept("okay")

    clock.advance(2.0)
    assert f.is_duplicate("Okay.")

    clock.advance(3.0)
    assert not f.is_duplicate("okay")


def test_identical_text_suppressed_within_short_window(make_settings, clock) -> None:
    f = TranscriptFilter(make_settings(duplicate_window_ms=2500), clock=clock)
    f.accept("the meeting starts at noon")

    clock.advance(1.0)
    assert f.is_duplicate("the meeting starts at noon")
    assert not f.is_duplicate("the meeting starts at one")

    clock.advance(2.0)
    assert not f.is_duplicate("the meeting starts at noon")


def test_nothing_is_duplicate_before_first_emission(make_settings) -> None:
    assert not TranscriptFilter(make_settings()).is_duplicate("okay")


def test_normalize_text() -> None:
    assert normalize_text("  Okay,  YES! ") == "okay yes"
