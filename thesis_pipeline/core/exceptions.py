"""
Platform-wide exception hierarchy.

Every service raises these types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Usage:
    from thesis_pipeline.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProjectStage", resource_id=42)
    raise ValidationError("juror_ids must contain two distinct users")

"Not enough evaluations yet" is NOT an exception: the consolidation
engine reports it as a ``PendingDecision`` result.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "ProjectStage").
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
    """Raised when input fails business-rule validation in the service layer.

    The data was well-formed but violated a business rule (invalid state
    transition, missing coordinator due date, unknown verdict).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidGrade(ValidationError):
    """Defense grade outside [0, 100] or not an integer. Rejected before any mutation."""

    def __init__(self, grade) -> None:
        self.grade = grade
        super().__init__(
            f"La nota debe ser un entero entre 0 y 100 (recibido: {grade!r})",
            details={"grade": "must be an integer between 0 and 100"},
        )


class EndorsementMissing(ValidationError):
    """Evaluation or consolidation attempted without an approved director endorsement."""

    def __init__(self, stage_id: int, stage_name: str | None = None) -> None:
        self.stage_id = stage_id
        self.stage_name = stage_name
        label = stage_name or "la etapa"
        super().__init__(
            f"La última versión de {label} (etapa {stage_id}) no tiene aval aprobado del director",
            details={"endorsement": "approved endorsement required"},
        )


class AlreadyConsolidated(ConflictError):
    """Concurrent-write guard tripped: another coordinator already consolidated the stage.

    The caller must refresh and inform the user that someone else acted.
    """

    def __init__(self, stage_id: int, official_state: str | None = None) -> None:
        self.stage_id = stage_id
        self.official_state = official_state
        Exception.__init__(
            self,
            f"La etapa {stage_id} ya fue consolidada"
            + (f" (estado oficial: {official_state})" if official_state else ""),
        )
        self.resource = "ProjectStage"
        self.field = "official_state"
        self.value = official_state


class LedgerWriteFailure(Exception):
    """The underlying store rejected a write.

    Carries the original driver error verbatim. Nothing is retried
    automatically; ``apply_decision`` may be re-invoked safely because its
    steps are idempotent per decision identity.
    """

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        msg = f"Ledger write failed during {operation}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
