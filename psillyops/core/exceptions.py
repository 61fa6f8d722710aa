"""
Platform-wide exception hierarchy.

Services raise only these types. Blueprints register handlers against them
once and get consistent HTTP status codes everywhere:

    NotFoundError   → 404
    ValidationError → 422
    ForbiddenError  → 403

Usage:
    from psillyops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProductionRun", resource_id=run_id)
    raise ValidationError("quantity must be a positive integer", details={"quantity": 0})
"""


class NotFoundError(Exception):
    """Raised when a referenced run, step, product or token does not exist.

    Args:
        resource: Human-readable entity name (e.g. "ProductionRun", "Step").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input or current state violates a business rule.

    Covers malformed values (non-positive quantity, empty reason) as well as
    wrong-state requests (starting a step that is not PENDING, editing a run
    after production started).

    Args:
        message: Human-readable explanation naming the offending value.
        details: Optional structured breakdown for API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the acting user lacks the assignment or capability required.

    Args:
        message: Human-readable explanation.
        action: Optional machine-readable name of the refused action.
    """

    def __init__(self, message: str, action: str | None = None) -> None:
        self.action = action
        super().__init__(message)
