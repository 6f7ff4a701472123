"""Exception types shared by all devbox components."""

from __future__ import annotations


class DevboxError(Exception):
    """Base class for every error devbox raises on purpose."""

    remedy: str | None = None

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        self.remedy = remedy


class PreconditionError(DevboxError):
    """A required tool, identity, project or resource is missing.

    Never retried; the remedy tells the developer what to do.
    """


class RemoteOperationError(DevboxError):
    """A Cloud Compute API call failed after transient retries.

    Attributes:
        operation: Short name of the failed call (e.g. ``create_disk``).
        code: Provider status code of the last failure, if known.
        remedy: Equivalent manual ``gcloud`` command.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        code: int | None = None,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message, remedy=remedy)
        self.operation = operation
        self.code = code

    def __str__(self) -> str:
        code = f" (code {self.code})" if self.code is not None else ""
        return f"{self.operation} failed{code}: {self.args[0]}"
