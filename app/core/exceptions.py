"""
Platform-wide exception hierarchy.

Services raise these types; the monthly report blueprint registers one
handler per type and maps them to consistent HTTP responses.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="MonthlyReport", resource_id=report_id)
    raise NotEditableError("save", current_status="submitted")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "MonthlyReport").
        resource_id: The PK that was looked up. Included in logs and message.
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
    """Raised when input is well-formed JSON but violates the payload schema.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a concurrent writer changed the row first.

    The caller should reload the resource and retry. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The guarded field (``version`` for optimistic locking,
               or the unique key that was raced on).
        value: The conflicting value as seen by the losing writer.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} was modified concurrently ({field}={value!r}); reload and retry"
        super().__init__(msg)


class InvalidTransitionError(Exception):
    """Raised when a lifecycle action is not allowed from the current status.

    Carries the actions that *are* valid so the UI can offer them.
    """

    def __init__(
        self,
        action: str,
        current_status: str,
        reason: str | None = None,
        available_actions: list[str] | None = None,
    ) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        self.available_actions = available_actions or []
        msg = f"Cannot '{action}' report (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotEditableError(Exception):
    """Raised when a payload write is attempted outside draft/returned."""

    def __init__(self, action: str, current_status: str) -> None:
        self.action = action
        self.current_status = current_status
        super().__init__(
            f"Cannot '{action}': report is '{current_status}' and no longer editable"
        )


class GenerationFailedError(Exception):
    """Raised inside the document pipeline.

    Never crosses the HTTP boundary directly: the job runner records the
    message on the job row and polling reports it.
    """


class IntegrityMismatchError(Exception):
    """Raised when a stored artifact no longer matches its recorded hash,
    or its authentication tag fails. Treated as a security incident.
    """

    def __init__(self, message: str, expected: str | None = None, computed: str | None = None) -> None:
        self.expected = expected
        self.computed = computed
        super().__init__(message)
