class PipelineError(Exception):
    """Base exception for all opportunity pipeline errors."""
    pass

class ValidationError(PipelineError):
    """Raised when input is malformed or violates a field rule."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid '{field}': {message}")

    @classmethod
    def from_pydantic(cls, error, default_field: str = "input") -> "ValidationError":
        """Builds a ValidationError naming the first field pydantic rejected."""
        first = error.errors()[0] if error.error_count() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or default_field
        return cls(field, first.get("msg", str(error)))

class UnknownStage(ValidationError):
    """Raised when a value is not a recognized pipeline stage."""
    def __init__(self, value, field: str = "stage"):
        self.value = value
        super().__init__(field, f"unknown stage {value!r}")

class ReferenceNotFound(PipelineError):
    """Raised when a referenced company, contact or owner does not exist."""
    def __init__(self, kind: str, ref_id: str):
        self.kind = kind
        self.ref_id = ref_id
        super().__init__(f"Referenced {kind} '{ref_id}' was not found.")

class NotFound(PipelineError):
    """Raised when no opportunity exists for the given id."""
    def __init__(self, opportunity_id: str):
        self.opportunity_id = opportunity_id
        super().__init__(f"Opportunity '{opportunity_id}' was not found.")

class InvalidState(PipelineError):
    """Raised when an operation is illegal for the opportunity's current status."""
    def __init__(self, opportunity_id: str, status: str, operation: str):
        self.opportunity_id = opportunity_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} opportunity '{opportunity_id}' while its status is '{status}'."
        )

class InvalidTransition(PipelineError):
    """Raised when a stage move is not permitted by the stage policy."""
    def __init__(self, from_stage: str, to_stage: str):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Stage transition '{from_stage}' -> '{to_stage}' is not allowed.")

class Conflict(PipelineError):
    """Raised when the stored opportunity changed since it was loaded."""
    def __init__(self, opportunity_id: str, expected_version: int):
        self.opportunity_id = opportunity_id
        self.expected_version = expected_version
        super().__init__(
            f"Opportunity '{opportunity_id}' was modified concurrently "
            f"(expected version {expected_version}). Reload and retry."
        )

class RepositoryError(PipelineError):
    """Raised when the storage or a collaborator fails for infrastructure reasons."""
    pass
