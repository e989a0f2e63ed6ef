"""Embedding-related exceptions with retry classification.

``EmbeddingTransientError`` and its subclasses are retried by the
embedding service; every other ``EmbeddingError`` is fatal for the call.
"""


class EmbeddingError(Exception):
    """Base exception for embedding operations."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class EmbeddingTransientError(EmbeddingError):
    """Timeout, connection failure or server-side error; safe to retry."""

    pass


class EmbeddingRateLimitError(EmbeddingTransientError):
    """Provider rate limit exceeded."""

    def __init__(self, message: str, provider: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, provider)


class EmbeddingInputError(EmbeddingError):
    """Input rejected (empty or malformed text); retrying cannot help."""

    pass


class EmbeddingAuthenticationError(EmbeddingError):
    """Provider rejected the credentials."""

    pass


class EmbeddingProviderNotConfiguredError(EmbeddingError):
    """Provider is missing configuration or is not registered."""

    pass
