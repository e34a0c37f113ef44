"""
Codex-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once (see ``codex.utils.errors.register_error_handlers``)
and get consistent HTTP status codes everywhere.

Usage:
    from codex.core.exceptions import NotFoundError, ValidationFailedError

    raise NotFoundError(resource="Model", resource_id=model_id)
    raise ValidationFailedError([FieldError("title", "Field is required", None)])
"""

from dataclasses import dataclass
from typing import Any


class CodexError(Exception):
    """Base class for all domain errors."""


@dataclass
class FieldError:
    """One field-level validation failure. Always safe to show end users."""

    field: str
    message: str
    rejected_value: Any = None

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "message": self.message,
            "rejected_value": self.rejected_value,
        }


class NotFoundError(CodexError):
    """Raised when a model/object/workflow/link is absent or soft-deleted.

    Args:
        resource: Human-readable entity name (e.g. "Model", "DataObject").
        resource_id: The id that was looked up. Included in logs only.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationFailedError(CodexError):
    """Raised when input fails validation. Carries every field error, not just the first.

    Also used for malformed structural input (model/workflow/ruleset
    definitions), where ``errors`` names the offending attribute.
    """

    def __init__(self, errors: list[FieldError], message: str | None = None) -> None:
        self.errors = list(errors)
        if message is None:
            fields = ", ".join(e.field for e in self.errors) or "input"
            message = f"Validation failed for: {fields}"
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str, rejected_value=None) -> "ValidationFailedError":
        return cls([FieldError(field, message, rejected_value)], message=message)

    @property
    def details(self) -> list[dict]:
        return [e.to_dict() for e in self.errors]


class UniqueConstraintError(CodexError):
    """Raised when a unique string property would be duplicated. Maps to HTTP 409."""

    def __init__(self, field: str, value: Any = None) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Value {value!r} for '{field}' must be unique")


class InvalidWorkflowTransitionError(CodexError):
    """Raised when a state change is not allowed by the model's workflow."""

    def __init__(self, message: str, current_state: str | None = None,
                 target_state: str | None = None) -> None:
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(message)


class RevertNotAllowedError(CodexError):
    """Raised when a changelog entry cannot be reverted.

    ``reason`` is a stable machine-readable code:
    ``create_not_revertible`` | ``revert_of_revert`` | ``unknown_change_type``.
    """

    CREATE_NOT_REVERTIBLE = "create_not_revertible"
    REVERT_OF_REVERT = "revert_of_revert"
    UNKNOWN_CHANGE_TYPE = "unknown_change_type"

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class LinkExpiredError(CodexError):
    def __init__(self, link_id: str) -> None:
        self.link_id = link_id
        super().__init__(f"Share link {link_id} has expired")


class LinkTypeMismatchError(CodexError):
    def __init__(self, link_id: str, link_type: str, action: str) -> None:
        self.link_id = link_id
        self.link_type = link_type
        self.action = action
        super().__init__(f"Share link {link_id} of type '{link_type}' does not allow '{action}'")


class ConflictError(CodexError):
    """Structural conflict: duplicate name, ruleset or workflow still in use.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(message)


class ConfigurationError(CodexError):
    """An administrator mistake in schema metadata (e.g. malformed ruleset regex)."""


class PersistenceError(CodexError):
    """Transaction or storage failure. Internal detail is logged, never returned."""
