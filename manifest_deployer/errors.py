"""
Error kinds raised by the manifest deployer.

Every error carries enough context to be written into a DeployItem's
``lastError`` by the lifecycle controller. ``retryable`` tells the operator
layer whether to requeue (kopf.TemporaryError) or give up
(kopf.PermanentError).
"""
from typing import Optional


class DeployerError(Exception):
    """Base class for all deployer errors."""

    retryable = True


class DecodeError(DeployerError):
    """A manifest, provider configuration or provider status is malformed."""

    retryable = False


class ConfigurationError(DeployerError):
    """The provider configuration asks for something the deployer can't do."""

    retryable = False


class ClientError(DeployerError):
    """A call to the resource store failed."""

    # 4xx responses that won't succeed on retry
    PERMANENT_STATUSES = {400, 403, 405, 415, 422}

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status not in self.PERMANENT_STATUSES


class NotFoundError(ClientError):
    def __init__(self, message: str):
        super().__init__(message, status=404)


class AlreadyExistsError(ClientError):
    """Create raced with another writer."""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class IncompleteDeletionError(DeployerError):
    """Teardown is still in progress; the finalizer is kept."""

    def __init__(self, message: str = "not all items are deleted"):
        super().__init__(message)


class ReadinessTimeoutError(DeployerError):
    def __init__(self, unready: list[str], last_error: Optional[Exception] = None):
        self.unready = list(unready)
        self.last_error = last_error
        msg = f"resources not ready after retry budget exhausted: {', '.join(self.unready)}"
        if last_error is not None:
            msg += f" (last error: {last_error})"
        super().__init__(msg)


class DeletionTimeoutError(DeployerError):
    def __init__(self, resource: str, timeout: float):
        self.resource = resource
        super().__init__(f"timed out after {timeout:g}s waiting for {resource} to be deleted")


class AggregateError(DeployerError):
    """Failures collected from concurrent tasks."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        if len(self.errors) == 1:
            msg = str(self.errors[0])
        else:
            msg = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(msg)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return all(getattr(e, "retryable", True) for e in self.errors)


class CancelledError(DeployerError):
    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)
