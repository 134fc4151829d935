"""
Ledgergate Error Handling

Specific error types for the capture -> approval -> execution pipeline.
Only TransformError and UpstreamError ever lead to a state transition;
the rest are raised before anything is written.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_FIELD = "MISSING_FIELD"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    TRANSFORM_FAILED = "TRANSFORM_FAILED"

    # Downstream errors
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"

    # Server errors
    NOT_CONFIGURED = "NOT_CONFIGURED"
    DATABASE_ERROR = "DATABASE_ERROR"


STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.MISSING_FIELD: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.TRANSFORM_FAILED: 422,
    ErrorCode.UPSTREAM_ERROR: 502,
    ErrorCode.UPSTREAM_TIMEOUT: 504,
    ErrorCode.NOT_CONFIGURED: 503,
    ErrorCode.DATABASE_ERROR: 500,
}


class GatewayError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_MAP.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "kind": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result

    def describe(self) -> str:
        """One-line form stored in a rejected Change's error field."""
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class ValidationError(GatewayError):
    """Request is missing required fields or carries malformed ones."""

    def __init__(self, message: str, detail: Optional[str] = None, field: Optional[str] = None):
        super().__init__(
            code=ErrorCode.MISSING_FIELD if field else ErrorCode.VALIDATION_FAILED,
            message=message,
            detail=detail,
            context={"field": field} if field else None
        )


class NotFoundError(GatewayError):
    """Unknown Change or Changeset id."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found",
            context={"entity": entity, "id": entity_id}
        )


class ConflictError(GatewayError):
    """Action attempted on a record that is no longer pending."""

    def __init__(self, entity: str, entity_id: str, detail: str):
        super().__init__(
            code=ErrorCode.CONFLICT,
            message=f"{entity} cannot be modified",
            detail=detail,
            context={"entity": entity, "id": entity_id}
        )


class TransformError(GatewayError):
    """Body could not be reshaped for a transformable endpoint."""

    def __init__(self, detail: str, family: str = "journals"):
        super().__init__(
            code=ErrorCode.TRANSFORM_FAILED,
            message=f"Could not transform {family} payload",
            detail=detail,
            context={"family": family}
        )


class UpstreamError(GatewayError):
    """Downstream API returned a non-success status, timed out or was unreachable."""

    def __init__(
        self,
        detail: str,
        downstream_status: Optional[int] = None,
        timed_out: bool = False,
        body: Any = None,
    ):
        self.downstream_status = downstream_status
        self.timed_out = timed_out
        self.body = body
        if timed_out:
            message = "Downstream API timed out"
        elif downstream_status is not None:
            message = f"Downstream API error: {downstream_status}"
        else:
            message = "Downstream API unreachable"
        super().__init__(
            code=ErrorCode.UPSTREAM_TIMEOUT if timed_out else ErrorCode.UPSTREAM_ERROR,
            message=message,
            detail=detail,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.downstream_status is not None:
            result["downstreamStatus"] = self.downstream_status
        return result


class ConfigurationError(GatewayError):
    """Downstream credentials are not configured."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.NOT_CONFIGURED,
            message="API credentials not configured",
            detail=detail
        )
