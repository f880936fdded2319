"""Translation of detected-language transcripts into the display language"""

from typing import Optional

import structlog

from .config import Settings, settings as default_settings
from .errors import ProviderError, ProviderNotConfiguredError
from .metrics import SessionStats, degraded_sessions_total
from .models import AUTO_LANGUAGE, UNKNOWN_LANGUAGE, DetectionResult, NormalizedTranscript

logger = structlog.get_logger(__name__)


def levenshtein_distance(s1: str, s2: str) -> int:
    """Calculate Levenshtein distance between two strings"""
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = range(len(s2) + 1)
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def similarity_ratio(s1: str, s2: str) -> float:
    """Edit-distance similarity in [0, 1], case-insensitive"""
    s1 = s1.strip().lower()
    s2 = s2.strip().lower()
    if not s1 and not s2:
        return 1.0
    max_len = max(len(s1), len(s2))
    return 1.0 - levenshtein_distance(s1, s2) / max_len


class TranslationNormalizer:
    """Per-session translation step with failure tracking.

    Consecutive translate failures are counted and reset on success. Once the
    count exceeds ``translate_error_threshold`` the session is degraded:
    translation is skipped and callers transcribe in the fallback language.
    """

    def __init__(self, provider, config: Optional[Settings] = None, stats: Optional[SessionStats] = None):
        self.provider = provider
        self.settings = config or default_settings
        self.stats = stats or SessionStats()
        self.error_count = 0
        self.degraded = False

    def needs_translation(self, target_mode: str, language: str) -> bool:
        return (
            target_mode == AUTO_LANGUAGE
            and language != self.settings.target_language
            and language != UNKNOWN_LANGUAGE
        )

    async def normalize(self, detection: DetectionResult, target_mode: str) -> NormalizedTranscript:
        original = detection.text
        source = detection.language
        target = self.settings.target_language

        if self.degraded or not self.needs_translation(target_mode, source):
            return NormalizedTranscript(text=original, language=source)

        try:
            translated = await self.provider.translate(original, source, target)
        except ProviderNotConfiguredError:
            raise
        except ProviderError as e:
            self.stats.record_provider_call("translate", "rate_limited" if e.status_code == 429 else "error")
            self._record_failure(e)
            return NormalizedTranscript(text=original, language=source)

        self.stats.record_provider_call("translate", "success")
        self.error_count = 0

        if not isinstance(translated, str) or not translated.strip():
            logger.warning("Translation returned no text, using original", source=source)
            return NormalizedTranscript(text=original, language=source)

        translated = translated.strip()
        if self._already_target(original, translated):
            logger.debug("Translation matches original, relabeling language", source=source, target=target)
            return NormalizedTranscript(text=original, language=target)

        return NormalizedTranscript(
            text=translated,
            language=source,
            original_text=original,
            translated_text=translated,
            dual_mode=True,
        )

    def _already_target(self, original: str, translated: str) -> bool:
        if original.strip().lower() == translated.lower():
            return True
        # Edit distance is noisy on short strings
        min_chars = self.settings.similarity_min_chars
        if len(original.strip()) < min_chars or len(translated) < min_chars:
            return False
        return similarity_ratio(original, translated) > self.settings.similarity_threshold

    def _record_failure(self, error: Exception):
        self.error_count += 1
        logger.warning(
            "Translation failed, using original text",
            error=str(error),
            consecutive_errors=self.error_count,
        )
        if not self.degraded and self.error_count > self.settings.translate_error_threshold:
            self.degraded = True
            degraded_sessions_total.inc()
            logger.warning(
                "⚠️ Translation disabled for session after repeated failures",
                errors=self.error_count,
                fallback=self.settings.fallback_language,
            )
