"""Transcript quality and duplicate filtering"""

import re
import time
from enum import Enum
from typing import Callable, Optional

import structlog

from .config import Settings, settings as default_settings
from .models import UNKNOWN_LANGUAGE

logger = structlog.get_logger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")


class FilterVerdict(str, Enum):
    ACCEPT = "accept"
    EMPTY = "empty"
    TOO_SHORT = "too_short"
    UNKNOWN_SHORT = "unknown_short"
    RETRY_FALLBACK = "retry_fallback"
    DUPLICATE = "duplicate"

    @property
    def rejected(self) -> bool:
        return self in (FilterVerdict.TOO_SHORT, FilterVerdict.UNKNOWN_SHORT)


def normalize_text(text: str) -> str:
    return " ".join(_PUNCTUATION.sub(" ", text.lower()).split())


class TranscriptFilter:
    """Content checks plus suppression of repeated emissions for one session"""

    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        self.settings = config or default_settings
        self.clock = clock
        self.filler_words = {w.lower() for w in self.settings.filler_words}
        self.last_emitted_text: Optional[str] = None
        self.last_emitted_at: Optional[float] = None

    def is_filler(self, text: str) -> bool:
        words = normalize_text(text).split()
        return 0 < len(words) <= 2 and all(w in self.filler_words for w in words)

    def check(self, text: str, language: str, allow_retry: bool = True) -> FilterVerdict:
        """Content check on a raw transcript before translation"""
        text = (text or "").strip()
        if not text:
            return FilterVerdict.EMPTY

        if language == UNKNOWN_LANGUAGE:
            if len(text) < self.settings.unknown_min_chars:
                logger.debug("Rejecting short unknown-language transcript", chars=len(text))
                return FilterVerdict.UNKNOWN_SHORT
            if allow_retry:
                return FilterVerdict.RETRY_FALLBACK

        words = text.split()
        longest = max(len(w) for w in words)
        if (
            len(words) < self.settings.min_word_count
            and len(text) < self.settings.min_text_chars
            and longest < self.settings.long_token_chars
            and not self.is_filler(text)
        ):
            logger.debug("Rejecting short transcript", text=text, words=len(words))
            return FilterVerdict.TOO_SHORT

        return FilterVerdict.ACCEPT

    def is_duplicate(self, text: str, now: Optional[float] = None) -> bool:
        if self.last_emitted_text is None or self.last_emitted_at is None:
            return False

        now = self.clock() if now is None else now
        elapsed_ms = (now - self.last_emitted_at) * 1000.0
        candidate = normalize_text(text)
        if candidate != self.last_emitted_text:
            return False

        if self.is_filler(text) and elapsed_ms <= self.settings.filler_window_ms:
            logger.debug("Suppressing repeated filler", text=text, elapsed_ms=round(elapsed_ms))
            return True
        if elapsed_ms <= self.settings.duplicate_window_ms:
            logger.debug("Suppressing duplicate transcript", text=text[:50], elapsed_ms=round(elapsed_ms))
            return True
        return False

    def accept(self, text: str, now: Optional[float] = None):
        self.last_emitted_text = normalize_text(text)
        self.last_emitted_at = self.clock() if now is None else now

    def reset(self):
        self.last_emitted_text = None
        self.last_emitted_at = None
