"""Exception hierarchy for the turn-orchestration core.

Only provider failures and configuration errors are raised. Parse misses,
policy denials and tool failures are turned into conversation context.
"""
from typing import Optional


class ClawLoopError(Exception):
    """Base exception for all claw-loop errors."""


class ProviderError(ClawLoopError):
    """The model backend failed to produce a response."""
    def __init__(self, message: str, retryable: bool = False, provider: Optional[str] = None):
        self.retryable = retryable
        self.provider = provider
        super().__init__(message)


class ProviderExhaustedError(ProviderError):
    """A retryable provider failure persisted past the retry budget."""
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Provider failed after {attempts} attempts: {last_error}",
            retryable=False,
            provider=getattr(last_error, "provider", None)
        )


class ConfigError(ClawLoopError):
    """Configuration file is missing required values or fails validation."""
