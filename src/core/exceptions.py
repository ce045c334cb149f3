"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Every exception carries a
machine-readable ``kind`` and a human-readable message.
"""

from typing import Any, Iterable, List, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    kind = "application_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""

    kind = "domain_error"


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""

    kind = "repository_error"


class ValidationException(ApplicationException):
    """Exception for malformed or missing input fields."""

    kind = "validation_error"


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    kind = "not_found"

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(
            message,
            details or {"resource_type": resource_type, "resource_id": resource_id}
        )


class ConfigurationException(ApplicationException):
    """Exception for configuration errors (e.g. an unmapped SLA priority)."""

    kind = "config_error"


class ConflictException(RepositoryException):
    """Raised by a repository when a concurrent write wins the race."""

    kind = "conflict"

    def __init__(
        self,
        resource_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None
    ):
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Incident '{resource_id}' was modified concurrently",
            {
                "resource_id": resource_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )


class InvalidTransitionException(DomainException):
    """Raised when a status change is not an edge of the transition graph."""

    kind = "invalid_transition"

    def __init__(self, current: Any, target: Any, allowed: Iterable[Any]):
        self.current = current
        self.target = target
        self.allowed = frozenset(allowed)
        allowed_names = self.allowed_values()
        message = f"Cannot change status from {_value(current)} to {_value(target)}"
        if allowed_names:
            message += f"; allowed: {', '.join(allowed_names)}"
        else:
            message += f"; {_value(current)} is terminal"
        super().__init__(
            message,
            {
                "current": _value(current),
                "target": _value(target),
                "allowed": allowed_names,
            }
        )

    def allowed_values(self) -> List[str]:
        """Allowed next statuses as sorted plain strings."""
        return sorted(_value(status) for status in self.allowed)


class InvalidStateException(DomainException):
    """Raised when an operation is not legal in the incident's current state."""

    kind = "invalid_state"


def _value(item: Any) -> str:
    return str(getattr(item, "value", item))
