"""Exception hierarchy for docuvid.

Providers and the assembler raise these; the orchestrator is the only place
that turns them into a terminal run state.
"""

from typing import Optional


class DocuvidError(Exception):
    """Base exception for all docuvid errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        """Initialize the exception.

        Args:
            message: Human-readable error message, safe to persist.
            details: Additional technical details for debugging.
        """
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class ConfigurationError(DocuvidError):
    """Raised when a required provider setting is missing."""


class InputTooLongError(DocuvidError):
    """Raised when a prompt exceeds the configured character cap."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Prompt is {length} characters; the limit is {limit}")
        self.length = length
        self.limit = limit


class ProviderError(DocuvidError):
    """Base class for external generation provider errors."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, connection errors, HTTP 429 and 5xx. Safe to retry."""


class PermanentProviderError(ProviderError):
    """Other 4xx responses and malformed payloads. Retrying will not help."""


class AssemblyError(DocuvidError):
    """Raised when the final video cannot be assembled."""


class TransientAssemblyError(AssemblyError):
    """Assembly failure that may succeed on retry (clip download hiccups)."""


class LeaseLost(DocuvidError):
    """Raised when a fenced write finds that this runner no longer owns the run."""

    def __init__(self, video_id):
        super().__init__(f"Video {video_id}: run claim is no longer held by this runner")
        self.video_id = video_id
