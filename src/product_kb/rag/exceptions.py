"""Text-generation exceptions with provider-specific handling."""


class LLMError(Exception):
    """Base exception for text-generation calls."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class LLMConnectionError(LLMError):
    """Failed to reach the provider, or the request timed out."""

    pass


class LLMRateLimitError(LLMError):
    """Rate limit exceeded."""

    def __init__(self, message: str, provider: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, provider)


class LLMAuthenticationError(LLMError):
    """Provider rejected the API key."""

    pass


class LLMResponseError(LLMError):
    """Response could not be decoded into the requested shape."""

    pass


class LLMProviderNotConfiguredError(LLMError):
    """Provider is not configured or not registered."""

    pass
