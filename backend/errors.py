"""
Error taxonomy for feed ingestion and chunked jobs.

Every error raised by the ingestion core derives from IngestError. The
``retryable`` flag drives the fetch fallback chain: retryable errors move on to
the next retrieval strategy, non-retryable ones surface immediately.
"""
from typing import Optional


class IngestError(Exception):
    """Base class for ingestion failures."""

    retryable = False

    @property
    def user_message(self) -> str:
        """Human-readable message stored on a failed job."""
        return str(self)


class NetworkError(IngestError):
    """Connection, DNS, reset or HTTP status failure while fetching a source."""

    retryable = True


class StallTimeout(IngestError):
    """No bytes arrived within the idle window."""

    retryable = True

    def __init__(self, idle_seconds: float):
        self.idle_seconds = idle_seconds
        super().__init__(f"Download stalled: no data received for {idle_seconds:g}s")


class CorruptedStream(IngestError):
    """Decompression failed mid-stream or the compressed stream was truncated."""

    retryable = True


class OversizedPayload(IngestError):
    """Decompressed document exceeds the largest representable in-memory text."""

    def __init__(self, compressed_bytes: int, decompressed_bytes: Optional[int] = None):
        self.compressed_bytes = compressed_bytes
        self.decompressed_bytes = decompressed_bytes
        detail = f"{_mb(compressed_bytes)}MB compressed"
        if decompressed_bytes:
            detail += f", {_mb(decompressed_bytes)}MB decompressed"
        super().__init__(
            f"EPG file is too large ({detail}). "
            "Use smaller EPG files or a regional/filtered source."
        )

    @property
    def user_message(self) -> str:
        size = f"File size: {_mb(self.compressed_bytes)}MB compressed"
        if self.decompressed_bytes:
            size += f" ({_mb(self.decompressed_bytes)}MB uncompressed)"
        return (
            "EPG file is too large for this environment.\n\n"
            f"{size}\n\n"
            "Suggestions:\n"
            "- Use a regional EPG file instead of a global one\n"
            "- Look for filtered/curated EPG sources\n"
            "- Contact your IPTV provider for a smaller EPG option"
        )


class MalformedSource(IngestError):
    """Content is not a document of the expected kind."""

    def __init__(self, message: str, preview: Optional[str] = None):
        self.preview = preview
        if preview:
            message = f"{message}. Preview: {preview}"
        super().__init__(message)


class ConflictError(IngestError):
    """A non-terminal job already exists for the same owner and target."""


class NotFoundError(IngestError):
    """Job or target does not exist."""


class PersistenceError(IngestError):
    """A store write failed; the current chunk is aborted."""

    retryable = True


class InvalidTransitionError(Exception):
    """Raised when a job status transition is not allowed."""


def _mb(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.1f}"
