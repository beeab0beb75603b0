"""
Error taxonomy for the tracking engine and RFC 7807 handling for the API.

Client-side errors (sensor, transport, routing) derive from TrackingError and
are absorbed by the component that owns them. API errors derive from
TrackProException and are rendered as Problem Details.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
import logging
import uuid
from datetime import datetime

logger = logging.getLogger(__name__)


# ==================== Tracking engine errors ====================


class TrackingError(Exception):
    """Base class for tracking engine errors."""

    recoverable = True


class SensorPermissionError(TrackingError):
    """Location permission denied. Fatal to the session."""

    recoverable = False


class SensorUnavailableError(TrackingError):
    """Position could not be determined right now."""


class SensorTimeoutError(TrackingError):
    """The sensor did not produce a reading in time."""


class TransportError(TrackingError):
    """A location update could not be delivered."""


class RoutingError(TrackingError):
    """The routing capability failed to produce a route."""


class JobAccessError(TrackingError):
    """The technician may not send updates for this job."""

    recoverable = False


# ==================== API errors ====================


class ErrorCode(str, Enum):
    """Standardized error codes for the tracking API."""

    UNAUTHORIZED = "AUTH_001"
    FORBIDDEN = "AUTH_002"

    VALIDATION_ERROR = "VAL_001"

    NOT_FOUND = "RES_001"


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response schema."""

    type: str = Field(
        default="about:blank",
        description="URI reference identifying the problem type"
    )
    title: str = Field(description="Short, human-readable summary of the problem")
    status: int = Field(description="HTTP status code")
    detail: str = Field(description="Human-readable explanation specific to this occurrence")
    instance: Optional[str] = Field(default=None, description="URI reference for this occurrence")
    code: str = Field(description="Machine-readable error code")
    timestamp: str = Field(description="ISO 8601 timestamp")
    trace_id: str = Field(description="Unique trace ID for debugging")
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Field-level validation errors"
    )


class TrackProException(HTTPException):
    """
    Base exception for the tracking API with RFC 7807 support.

    Usage:
        raise TrackProException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Job not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.trace_id = str(uuid.uuid4())[:12]
        self.timestamp = datetime.utcnow().isoformat() + "Z"

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    @staticmethod
    def _default_title(status_code: int) -> str:
        """Get default title based on status code."""
        titles = {
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            422: "Validation Error",
        }
        return titles.get(status_code, "Error")

    def to_problem_detail(self) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=f"https://trackpro.dev/problems/{self.code.value.lower().replace('_', '-')}",
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
        )


class NotFoundError(TrackProException):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str, instance: Optional[str] = None):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
            instance=instance,
        )


class UnauthorizedError(TrackProException):
    """Caller could not be identified (401)."""

    def __init__(self, detail: str = "Technician identity required"):
        super().__init__(status_code=401, code=ErrorCode.UNAUTHORIZED, detail=detail)


class ForbiddenError(TrackProException):
    """Permission denied (403)."""

    def __init__(self, detail: str = "Permission denied"):
        super().__init__(status_code=403, code=ErrorCode.FORBIDDEN, detail=detail)


async def trackpro_exception_handler(request: Request, exc: TrackProException) -> JSONResponse:
    """Handle TrackProException with RFC 7807 response."""
    logger.warning(
        f"TrackProException: {exc.code.value} - {exc.detail}",
        extra={
            "trace_id": exc.trace_id,
            "status_code": exc.status_code,
            "path": request.url.path,
        }
    )
    problem = exc.to_problem_detail()
    if problem.instance is None:
        problem.instance = str(request.url.path)

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=exc.headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the Problem Details handler on the application."""
    app.add_exception_handler(TrackProException, trackpro_exception_handler)
