from __future__ import annotations

from typing import Any


class CloneGuardError(Exception):
    """Base error for clone governance operations."""

    code = "CLONEGUARD_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class InvalidArgumentError(CloneGuardError):
    """Unknown enumeration value, malformed identifier, or missing required field."""

    code = "INVALID_ARGUMENT"


class QuotaExceededError(CloneGuardError):
    """Actor already holds the maximum number of clones for the environment."""

    code = "QUOTA_EXCEEDED"


class PolicyViolationError(CloneGuardError):
    """Request blocked by one or more active compliance policies."""

    code = "POLICY_VIOLATION"


class PolicyDeniedError(CloneGuardError):
    """Limit configuration does not permit the requested clone kind."""

    code = "POLICY_DENIED"


class NotFoundError(CloneGuardError):
    """Referenced clone, policy, or violation does not exist."""

    code = "NOT_FOUND"


class PermissionDeniedError(CloneGuardError):
    """Actor is not allowed to act on the referenced clone."""

    code = "PERMISSION_DENIED"


class PartialFailureError(CloneGuardError):
    """Physical copy exists but its access indirection could not be completed."""

    code = "PARTIAL_FAILURE"


class CloneTimeoutError(CloneGuardError):
    """Data-platform operation exceeded its time budget."""

    code = "TIMEOUT"


class ExternalError(CloneGuardError):
    """Data-platform collaborator or registry store failure."""

    code = "EXTERNAL_ERROR"


class DataPlatformConfigError(CloneGuardError):
    """Missing or invalid data-platform configuration."""

    code = "PLATFORM_CONFIG_ERROR"


class DataPlatformError(CloneGuardError):
    """A data-platform command failed."""

    code = "PLATFORM_ERROR"
