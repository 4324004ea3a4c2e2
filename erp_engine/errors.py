"""
Business and concurrency errors raised by the transaction engine.

Every error carries a stable ``code`` and an HTTP status so the API layer can
render it without knowing the engine internals. ``retryable`` marks failures
caused by contention (lock timeouts, unique collisions, deadlocks) where the
caller may simply resend the request.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class EngineError(HTTPException):
    """Base class for all engine exceptions"""

    code = "ENGINE_ERROR"
    status_code_default = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code or self.status_code_default, detail=message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(EngineError):
    code = "VALIDATION_FAILED"


class NotFound(EngineError):
    code = "NOT_FOUND"
    status_code_default = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} {identifier} not found",
            details={"resource": resource, "id": identifier},
        )


class PermissionDenied(EngineError):
    code = "PERMISSION_DENIED"
    status_code_default = status.HTTP_403_FORBIDDEN


class BusinessRuleViolation(EngineError):
    code = "BUSINESS_RULE_VIOLATION"
    status_code_default = status.HTTP_409_CONFLICT


class InsufficientStock(BusinessRuleViolation):
    code = "INSUFFICIENT_STOCK"


class ProductMismatch(BusinessRuleViolation):
    code = "PRODUCT_MISMATCH"


class AssignmentQuantityMismatch(BusinessRuleViolation):
    code = "ASSIGNMENT_QUANTITY_MISMATCH"


class InvalidStateTransition(BusinessRuleViolation):
    code = "INVALID_STATE_TRANSITION"


class DuplicateInstanceCode(BusinessRuleViolation):
    code = "DUPLICATE_INSTANCE_CODE"


class LedgerError(BusinessRuleViolation):
    code = "LEDGER_ERROR"


class ConflictError(EngineError):
    code = "CONFLICT"
    status_code_default = status.HTTP_409_CONFLICT
    retryable = True


class LockTimeout(ConflictError):
    code = "LOCK_TIMEOUT"
