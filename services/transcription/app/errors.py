"""Exceptions raised by the transcription pipeline"""

from typing import Optional


class TranscriptionError(Exception):
    """Base class for transcription service errors"""


class ProviderError(TranscriptionError):
    """Upstream STT/translation call failed"""

    def __init__(self, message: str, operation: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Upstream returned 429"""


class ProviderNotConfiguredError(TranscriptionError):
    def __init__(self, reason: str):
        super().__init__(f"Transcription provider not configured: {reason}")
        self.reason = reason


class DetectionFailedError(TranscriptionError):
    """No usable transcript from any candidate nor from the fallback language"""


class SessionError(TranscriptionError):
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionLimitError(SessionError):
    pass
