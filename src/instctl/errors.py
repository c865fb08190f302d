"""
Error types for instctl.

This module defines the InstctlError base class and the subclasses used by the
upgrade orchestrator. Collaborator failures are wrapped into one of these with
a description of the step that failed; the original exception is kept as the
``__cause__`` and its text is copied into ``details["cause"]``.

The CLI maps NeedsRevertError to a distinct exit status and every other
InstctlError to a generic failure.
"""

from __future__ import annotations

from typing import Any


class InstctlError(Exception):
    """
    Base exception class for instctl errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "failed_precondition", "unavailable", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, versions, cause).

    Example:
        >>> raise InstctlError(
        ...     error_code="not_found",
        ...     message="instance 'main' not found",
        ...     details={"name": "main"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an InstctlError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(InstctlError):
    """Error raised for invalid user input (bad version string, conflicting options)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class PermissionDeniedError(InstctlError):
    """Error raised when credentials are missing or rejected."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class UnavailableError(InstctlError):
    """
    Error raised when a required resource or service is unavailable.

    Used for unreachable catalogs and cloud APIs, missing executables and
    command timeouts.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(InstctlError):
    """
    Error raised when a precondition for the operation is not met.

    The filesystem or the instance is in a state that does not allow the
    requested operation.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(InstctlError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


# =============================================================================
# Upgrade Errors
# =============================================================================


class NoMatchingPackageError(InstctlError):
    """No package in the catalog satisfies the version query."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="not_found", message=message, details=details)


class InstanceNotFoundError(InstctlError):
    """The named local or cloud instance does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="not_found", message=message, details=details)


class UpgradeAlreadyInProgressError(FailedPreconditionError):
    """
    The upgrade marker already exists for the instance.

    Either another upgrade is running or a previous one was interrupted;
    the operator has to run revert before upgrading again.
    """


class ProjectInUseError(FailedPreconditionError):
    """The instance is linked to projects and the upgrade was not forced."""


class InstallationError(InstctlError):
    """The package installer failed; its output is kept verbatim."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="installation_failed", message=message, details=details
        )


class ServerStartError(UnavailableError):
    """The database server could not be brought up by a start strategy."""


class DumpFailedError(InstctlError):
    """
    Producing the logical dump failed.

    Raised before any destructive step, so the instance is untouched and
    the upgrade can be retried from scratch.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="dump_failed", message=message, details=details)


class BackupFailedError(InstctlError):
    """Writing backup metadata or moving the data directory aside failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="backup_failed", message=message, details=details
        )


class RestoreFailedError(InstctlError):
    """Reinitializing the data directory or restoring the dump failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="restore_failed", message=message, details=details
        )


class NeedsRevertError(InstctlError):
    """
    An incompatible upgrade failed after the data directory was moved aside.

    The instance has to be reverted by the operator. The original failure
    is chained as ``__cause__``.

    Attributes:
        instance_name: Name of the instance to revert.
        revert_command: Command line the operator should run.
    """

    def __init__(
        self,
        instance_name: str,
        revert_command: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("instance", instance_name)
        details.setdefault("revert_command", revert_command)
        super().__init__(error_code="needs_revert", message=message, details=details)
        self.instance_name = instance_name
        self.revert_command = revert_command
