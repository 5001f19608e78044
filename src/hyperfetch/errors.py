"""Error types for request orchestration flows."""

from __future__ import annotations

from typing import Any


class HyperFetchError(RuntimeError):
    """Base error for hyperfetch operations."""

    def signature(self) -> tuple[Any, ...]:
        """Return a structural identity used for deep-equal comparison."""
        return (type(self).__name__, str(self))


class AbortError(HyperFetchError):
    """Raised when an operation is cancelled through the abort registry."""

    def __init__(self, message: str = "request aborted") -> None:
        super().__init__(message)


class RequestTimeoutError(HyperFetchError):
    """Raised when an operation exceeds its configured timeout."""

    def __init__(self, message: str = "request timed out") -> None:
        super().__init__(message)


class AdapterError(HyperFetchError):
    """Executor returned a non-success status or failed in transport."""

    def __init__(self, message: str, *, status: int | str | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def signature(self) -> tuple[Any, ...]:
        return (*super().signature(), self.status, repr(self.body))


class RetryExhaustedError(HyperFetchError):
    """All configured attempts failed."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"request failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error

    def signature(self) -> tuple[Any, ...]:
        return (*super().signature(), self.attempts, error_signature(self.last_error))


class ValidationError(HyperFetchError):
    """Raised when a command still has unresolved path parameters."""

    def __init__(self, endpoint: str, missing: list[str]) -> None:
        super().__init__(f"missing path params for {endpoint}: {', '.join(missing)}")
        self.endpoint = endpoint
        self.missing = missing


class CLIError(HyperFetchError):
    """User-facing CLI error."""


def error_signature(error: BaseException | None) -> tuple[Any, ...] | None:
    """Structural identity for any error, including foreign exceptions."""
    if error is None:
        return None
    if isinstance(error, HyperFetchError):
        return error.signature()
    return (type(error).__name__, str(error))
