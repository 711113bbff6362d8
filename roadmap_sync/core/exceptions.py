"""
Service-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from roadmap_sync.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workspace", resource_id=workspace_id)
    raise ValidationError("max_depth must be between 1 and 10", details={"max_depth": "..."})

Sync-specific kinds:
    SourceFetchError     network / parse failure talking to the Source System
    TargetWriteError     failed write to the Target System
    ConstraintViolation  cyclic or dangling hierarchy reference
    BusyError            a sync run is already active for the workspace
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given workspace.

    Args:
        resource: Human-readable model/entity name (e.g. "Workspace", "RankingBatch").
        resource_id: The key that was looked up. Included in logs and messages.
        workspace_id: Optional; the scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        workspace_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.workspace_id = workspace_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if workspace_id is not None:
            msg += f" (workspace={workspace_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with existing state. Maps to HTTP 409."""


class BusyError(ConflictError):
    """Raised when a sync run is requested while another one is active.

    Raised before any Ledger row is written, so a rejected call has no
    side effects.
    """

    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"A hierarchy sync is already in progress for workspace {workspace_id}")


class SourceFetchError(Exception):
    """Raised when the Source System cannot be read or returns an unparseable payload.

    Args:
        message: Human-readable cause; stored verbatim in the Ledger.
        status_code: HTTP status of the last attempt, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TargetWriteError(Exception):
    """Raised when a write to the Target System fails.

    Entity Mapping and rank push catch it per item and report a boolean /
    per-item error instead of aborting the batch.
    """

    def __init__(self, message: str, target_id: str | None = None, status_code: int | None = None) -> None:
        self.target_id = target_id
        self.status_code = status_code
        super().__init__(message)


class ConstraintViolation(Exception):
    """Raised when the Feature parent graph would become cyclic or references a foreign row."""
