"""
Reconciliation error taxonomy.

InvalidArgument  - malformed or missing input
NotFound         - unknown (or soft-deleted) run / mismatch id
InvalidState     - operation not allowed in the record's current state
ExecutionFailure - internal fault while a run executes; recorded on the
                   run's error_message instead of reaching the caller
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(ReconciliationError):
    """Raised for malformed input."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


class NotFound(ReconciliationError):
    """Raised when a run or mismatch does not exist for the caller."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidState(ReconciliationError):
    """Raised when the record's state forbids the operation."""


class ExecutionFailure(ReconciliationError):
    """Raised inside the run pipeline; becomes the run's error_message."""

    def __init__(self, run_id: str, message: str):
        super().__init__(message)
        self.run_id = run_id


class ExecutionTimeout(ExecutionFailure):
    """Run pipeline exceeded the configured execution timeout."""

    def __init__(self, run_id: str, timeout_seconds: float):
        super().__init__(
            run_id,
            f"Timeout: processing exceeded {timeout_seconds:g} seconds"
        )
        self.timeout_seconds = timeout_seconds
