"""
Companion memory exceptions.

Lower layers raise these; the MemoryService facade logs them so the
host's conversational turn is never blocked by memory or emotion work.
"""


class CompanionMemoryError(Exception):
    """Base exception for the companion memory system."""

    pass


class StorageError(CompanionMemoryError):
    """Persistence failure."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class WindowConflictError(StorageError):
    """A concurrent writer changed the window before our update committed."""

    def __init__(self, window_id: int):
        self.window_id = window_id
        super().__init__(f"Chat window {window_id} was modified concurrently")


class EmotionConflictError(StorageError):
    """A concurrent writer changed the emotion state before our update."""

    def __init__(self, scope_key: str):
        self.scope_key = scope_key
        super().__init__(f"Emotion state for {scope_key} was modified concurrently")


class EmbeddingError(CompanionMemoryError):
    """Embedding capability failed or timed out."""

    pass


class SummarizerError(CompanionMemoryError):
    """Summarizer capability failed, timed out or returned nothing."""

    pass


class MalformedSummaryError(SummarizerError):
    """Summarizer output did not contain a decodable JSON object."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Failed to parse summary json: {reason}")


class SummarizationError(CompanionMemoryError):
    """A full window could not be turned into a memory; it stays pending."""

    def __init__(self, window_id: int | None, cause: Exception):
        self.window_id = window_id
        self.cause = cause
        super().__init__(f"Summarization of window {window_id} failed: {cause}")


class InvalidSentimentLabelError(CompanionMemoryError):
    """Sentiment label is not one of Positive, Negative, Neutral."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Invalid sentiment label: {raw!r}")
