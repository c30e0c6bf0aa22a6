from __future__ import annotations

from utils import ApiError


class ValidationError(ApiError):
    """Campaign not closed or an appeal is still open; nothing was mutated."""

    def __init__(self, message: str):
        super().__init__("VALIDATION_FAILED", message, http_status=400)


class StepExecutionError(ApiError):
    def __init__(self, step: str, message: str, *, attempts: list | None = None):
        super().__init__("STEP_FAILED", message)
        self.step = step
        # Notification attempts made before the failure, kept for the record.
        self.attempts = list(attempts or [])


class SchedulingError(ApiError):
    """A record the engine depends on (campaign, employee, execution) is missing."""

    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(code, message, http_status=404)


class RollbackGuardError(ApiError):
    def __init__(self, message: str):
        super().__init__("ROLLBACK_NOT_ALLOWED", message, http_status=409)


class TransitionError(ApiError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            "TRANSITION_NOT_ALLOWED",
            f"Illegal execution status transition: {from_status or '-'} -> {to_status or '-'}",
            http_status=409,
        )
        self.from_status = from_status
        self.to_status = to_status


class AuditFinalizedError(ApiError):
    def __init__(self, entry_id):
        super().__init__("CONFLICT", f"Audit entry {entry_id} is already finalized")
