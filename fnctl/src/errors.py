from __future__ import annotations


class FunctionError(RuntimeError):
    """Base class for every error raised by the Function controller."""


class ConfigError(FunctionError, ValueError):
    """Raised when the controller configuration is invalid."""


class ValidationError(FunctionError):
    """A Function declaration is invalid and will not be applied.

    Not retried by the controller; the next edit of the Function re-enters
    reconciliation.
    """


class InvalidAliasError(ValidationError):
    pass


class InvalidVersionError(ValidationError):
    pass


class InvalidSpecError(ValidationError):
    """A spec field holds a value of the wrong type or shape."""


class ApplyError(FunctionError):
    """Creating or updating the generated deployment resources failed."""


class PublishError(FunctionError):
    """Creating a published snapshot of a Function failed."""


class StoreError(FunctionError):
    """A call against the Function object store failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """The object changed since it was read (optimistic concurrency)."""


class FunctionFailedError(FunctionError):
    """A waited-on Function reached the ``error`` state."""


class WaitTimeoutError(FunctionError, TimeoutError):
    """A condition wait did not complete in time."""

    def __init__(self, resource: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for function {resource}"
        )
        self.resource = resource
        self.timeout_seconds = timeout_seconds
