"""
Custom exceptions and error codes for the Proofline engine.

This module provides:
- Structured error codes for categorized error handling
- Custom exception classes for specific failure scenarios
- Error response schema for consistent command and API results
"""
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """
    Application-wide error codes for categorized error handling.

    Format: CATEGORY_SPECIFIC_ERROR
    Categories:
    - STEP_*: Step state machine errors
    - RECALIBRATION_*: Recalibration request errors
    - TIMELINE_*: Timeline lookup errors
    - BAKE_*: Bake lifecycle errors
    - CLOCK_*: Clock consistency warnings
    - ALARM_*: Notification backend failures
    - DATABASE_*: Database operation errors
    """

    # Step-related errors
    STEP_INVALID_TRANSITION = "STEP_INVALID_TRANSITION"
    STEP_NOT_FOUND = "STEP_NOT_FOUND"

    # Recalibration errors
    RECALIBRATION_INVALID = "RECALIBRATION_INVALID"

    # Timeline / bake errors
    TIMELINE_NOT_FOUND = "TIMELINE_NOT_FOUND"
    BAKE_INVALID_STATE = "BAKE_INVALID_STATE"

    # Clock errors (warnings only, never fatal)
    CLOCK_SKEW = "CLOCK_SKEW"

    # Alarm backend errors
    ALARM_SCHEDULING_ERROR = "ALARM_SCHEDULING_ERROR"

    # Database errors
    DATABASE_CONNECTION_ERROR = "DATABASE_CONNECTION_ERROR"
    DATABASE_QUERY_ERROR = "DATABASE_QUERY_ERROR"

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Structured error payload returned to callers."""
    error_code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(use_enum_values=True)


class ProoflineError(Exception):
    """
    Base exception for all Proofline errors.

    Provides structured error information for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse for command results."""
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details if self.details else None,
        )


# State machine exceptions

class InvalidTransitionError(ProoflineError):
    """Raised when a step status change violates the state machine guards."""

    def __init__(self, step_id: str, current_status: str, attempted: str, reason: str = None):
        message = f"Cannot {attempted} step '{step_id}' while it is {current_status}"
        if reason:
            message += f": {reason}"
        super().__init__(
            message=message,
            error_code=ErrorCode.STEP_INVALID_TRANSITION,
            details={
                "step_id": step_id,
                "current_status": current_status,
                "attempted": attempted,
            },
            status_code=409,
        )


class InvalidRecalibrationError(ProoflineError):
    """Raised when a recalibration request has a bad shape or target."""

    def __init__(self, reason: str, details: Dict[str, Any] = None):
        super().__init__(
            message=f"Invalid recalibration: {reason}",
            error_code=ErrorCode.RECALIBRATION_INVALID,
            details=details,
            status_code=422,
        )


# Lookup exceptions

class NotFoundError(ProoflineError):
    """Base exception for unknown step or timeline identifiers."""

    def __init__(self, message: str, error_code: ErrorCode, details: Dict[str, Any]):
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            status_code=404,
        )


class StepNotFoundError(NotFoundError):
    """Raised when a step id does not exist in the timeline."""

    def __init__(self, step_id: str, bake_id: str = None):
        details = {"step_id": step_id}
        if bake_id:
            details["bake_id"] = bake_id
        super().__init__(
            message=f"Step '{step_id}' not found",
            error_code=ErrorCode.STEP_NOT_FOUND,
            details=details,
        )


class TimelineNotFoundError(NotFoundError):
    """Raised when no timeline exists for a bake."""

    def __init__(self, bake_id: str):
        super().__init__(
            message=f"Timeline for bake '{bake_id}' not found",
            error_code=ErrorCode.TIMELINE_NOT_FOUND,
            details={"bake_id": bake_id},
        )


class BakeStateError(ProoflineError):
    """Raised when a command is not allowed in the bake's current lifecycle state."""

    def __init__(self, bake_id: str, bake_status: str, command: str):
        super().__init__(
            message=f"Cannot run '{command}' on bake '{bake_id}' while it is {bake_status}",
            error_code=ErrorCode.BAKE_INVALID_STATE,
            details={"bake_id": bake_id, "bake_status": bake_status, "command": command},
            status_code=409,
        )


class ClockSkewError(ProoflineError):
    """
    A derived timestamp precedes an earlier immutable timestamp.

    Never raised across the command boundary: the engine logs it, clamps the
    value to ``now`` and attaches the response to the result as a warning.
    """

    def __init__(self, step_id: str, reference: str, observed: str):
        super().__init__(
            message=f"Clock skew on step '{step_id}': {observed} precedes {reference}",
            error_code=ErrorCode.CLOCK_SKEW,
            details={"step_id": step_id, "reference": reference, "observed": observed},
            status_code=200,
        )


# Alarm-related exceptions

class AlarmSchedulingError(ProoflineError):
    """Raised when the notification backend rejects a reschedule."""

    def __init__(self, bake_id: str, reason: str):
        super().__init__(
            message=f"Could not reschedule alarms for bake '{bake_id}': {reason}",
            error_code=ErrorCode.ALARM_SCHEDULING_ERROR,
            details={"bake_id": bake_id},
            status_code=500,
        )


# Database-related exceptions

class DatabaseError(ProoflineError):
    """Raised when persisting timeline mutations fails."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_QUERY_ERROR,
        details: Dict[str, Any] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            status_code=500,
        )
