"""Multi-language detection by racing transcription attempts across candidates"""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern

import structlog

from .config import Settings, settings as default_settings
from .errors import DetectionFailedError, ProviderError, ProviderNotConfiguredError, RateLimitError
from .metrics import SessionStats
from .models import AUTO_LANGUAGE, CandidateResult, DetectionResult

logger = structlog.get_logger(__name__)

# Unicode blocks used to check that a transcript is written in the script of its language
SCRIPT_PATTERNS: Dict[str, Pattern] = {
    "hi-IN": re.compile(r"[ऀ-ॿ]"),  # Devanagari
    "mr-IN": re.compile(r"[ऀ-ॿ]"),
    "bn-IN": re.compile(r"[ঀ-৿]"),
    "pa-IN": re.compile(r"[਀-੿]"),  # Gurmukhi
    "gu-IN": re.compile(r"[઀-૿]"),
    "od-IN": re.compile(r"[଀-୿]"),
    "ta-IN": re.compile(r"[஀-௿]"),
    "te-IN": re.compile(r"[ఀ-౿]"),
    "kn-IN": re.compile(r"[ಀ-೿]"),
    "ml-IN": re.compile(r"[ഀ-ൿ]"),
}

REPEATED_CHARS = re.compile(r"(\w)\1{4,}")


@dataclass(frozen=True)
class ScoreWeights:
    word_count: float = 20.0
    char_count: float = 0.8
    length_bonus: float = 15.0
    valid_word_length_bonus: float = 35.0
    long_transcript_bonus: float = 25.0
    long_char_bonus: float = 20.0
    script_match_bonus: float = 35.0
    no_repeat_bonus: float = 30.0
    repeated_chars_penalty: float = 0.1
    ascii_ratio_threshold: float = 0.9
    long_transcript_words: int = 8
    long_transcript_chars: int = 50


DEFAULT_WEIGHTS = ScoreWeights()


def script_matches(text: str, language: str, weights: ScoreWeights = DEFAULT_WEIGHTS) -> bool:
    """True when the transcript is written in the script expected for ``language``"""
    letters = [c for c in text if not c.isspace()]
    if not letters:
        return False

    if language.startswith("en"):
        ascii_ratio = sum(1 for c in letters if ord(c) < 128) / len(letters)
        return ascii_ratio >= weights.ascii_ratio_threshold

    pattern = SCRIPT_PATTERNS.get(language)
    return bool(pattern and pattern.search(text))


def score_transcript(text: str, language: str, weights: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    """Length-weighted quality score: more recognised words score higher"""
    text = text.strip()
    if not text:
        return 0.0

    words = text.split()
    word_count = len(words)
    char_count = len(text)

    score = word_count * weights.word_count + char_count * weights.char_count + weights.length_bonus

    avg_word_length = sum(len(w) for w in words) / word_count
    if 3 <= avg_word_length <= 15:
        score += weights.valid_word_length_bonus
    if word_count >= weights.long_transcript_words:
        score += weights.long_transcript_bonus
    if char_count >= weights.long_transcript_chars:
        score += weights.long_char_bonus
    if script_matches(text, language, weights):
        score += weights.script_match_bonus

    unique_ratio = len({w.lower() for w in words}) / word_count
    if word_count > 1 and unique_ratio >= 0.5:
        score += weights.no_repeat_bonus

    if REPEATED_CHARS.search(text):
        score *= weights.repeated_chars_penalty

    return round(score, 1)


class LanguageDetector:
    """Finds the language of a clip by transcribing it in candidate languages.

    Candidates are tried one at a time in priority order, at most
    ``max_languages`` of them, with ``api_delay_ms`` between calls. A 429 is
    retried once after ``rate_limit_delay_ms``; any other failure counts as an
    empty result. The loop stops early on a result whose score and word count
    both reach the early-exit thresholds. The best strictly-higher score wins,
    so ties go to the earlier candidate.
    """

    def __init__(
        self,
        provider,
        config: Optional[Settings] = None,
        stats: Optional[SessionStats] = None,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ):
        self.provider = provider
        self.settings = config or default_settings
        self.stats = stats or SessionStats()
        self.weights = weights

    def candidate_order(self, last_language: Optional[str] = None) -> List[str]:
        candidates = list(self.settings.candidate_languages)
        if last_language and self.settings.use_last_language_cache:
            if last_language in candidates:
                candidates.remove(last_language)
            candidates.insert(0, last_language)
        return candidates[: max(1, self.settings.effective_max_languages)]

    async def detect(
        self,
        audio: bytes,
        target_language: str,
        last_language: Optional[str] = None,
    ) -> DetectionResult:
        """Transcribe ``audio`` (a WAV clip) and pick its language"""
        if target_language != AUTO_LANGUAGE:
            return await self.transcribe_in(audio, target_language)

        candidates = self.candidate_order(last_language)
        attempts: List[CandidateResult] = []
        best: Optional[CandidateResult] = None
        early_exit = False
        consecutive_empty = 0
        delay = self.settings.api_delay_ms / 1000.0

        for index, language in enumerate(candidates):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)

            result = await self._attempt(audio, language)
            attempts.append(result)

            if result.is_empty:
                consecutive_empty += 1
                if self.settings.empty_break_threshold and consecutive_empty >= self.settings.empty_break_threshold:
                    logger.debug("Stopping detection after consecutive empty results", empties=consecutive_empty)
                    break
                continue
            consecutive_empty = 0

            if best is None or result.score > best.score:
                best = result

            if (
                result.score >= self.settings.effective_early_exit_score
                and result.word_count >= self.settings.early_exit_min_words
            ):
                early_exit = True
                logger.info(
                    "Early exit on confident language match",
                    language=result.language,
                    score=result.score,
                    tested=len(attempts),
                )
                break

        if best is None:
            logger.warning(
                "No candidate produced a transcript, using fallback language",
                tested=[a.language for a in attempts],
                fallback=self.settings.fallback_language,
            )
            result = await self.transcribe_in(audio, self.settings.fallback_language)
            return result.model_copy(update={
                "auto_detected": True,
                "used_fallback": True,
                "attempts": attempts + result.attempts,
            })

        logger.info(
            "Language detected",
            language=best.language,
            score=best.score,
            words=best.word_count,
            scores={a.language: a.score for a in attempts},
        )
        return DetectionResult(
            language=best.language,
            text=best.text,
            score=best.score,
            word_count=best.word_count,
            auto_detected=True,
            early_exit=early_exit,
            attempts=attempts,
        )

    async def transcribe_in(self, audio: bytes, language: str) -> DetectionResult:
        """Single transcription in a fixed language; raises when it cannot complete"""
        result = await self._attempt(audio, language)
        if result.error is not None:
            raise DetectionFailedError(f"Transcription in {language} failed: {result.error}")
        return DetectionResult(
            language=result.language,
            text=result.text,
            score=result.score,
            word_count=result.word_count,
            attempts=[result],
        )

    async def _attempt(self, audio: bytes, language: str) -> CandidateResult:
        try:
            try:
                response = await self.provider.transcribe(audio, language)
            except RateLimitError:
                self.stats.record_provider_call("transcribe", "rate_limited")
                logger.warning(
                    "Rate limited, retrying candidate once",
                    language=language,
                    delay_ms=self.settings.rate_limit_delay_ms,
                )
                await asyncio.sleep(self.settings.rate_limit_delay_ms / 1000.0)
                response = await self.provider.transcribe(audio, language)
        except ProviderNotConfiguredError:
            raise
        except RateLimitError as e:
            self.stats.record_provider_call("transcribe", "rate_limited")
            logger.warning("Candidate still rate limited after retry", language=language)
            return CandidateResult(language=language, error=str(e) or e.__class__.__name__)
        except (ProviderError, asyncio.TimeoutError) as e:
            self.stats.record_provider_call("transcribe", "error")
            logger.warning("Candidate transcription failed", language=language, error=str(e))
            return CandidateResult(language=language, error=str(e) or e.__class__.__name__)

        self.stats.record_provider_call("transcribe", "success")

        text = (response.transcript or "").strip()
        detected = response.detected_language or language
        if not text:
            logger.debug("Empty transcript for candidate", language=language)
            return CandidateResult(language=detected)

        result = CandidateResult(
            language=detected,
            text=text,
            word_count=len(text.split()),
            char_count=len(text),
            score=score_transcript(text, detected, self.weights),
        )
        logger.debug(
            "Candidate scored",
            language=detected,
            score=result.score,
            words=result.word_count,
            text=text[:50],
        )
        return result
