"""
Shared error response schemas for OpenAPI documentation.

Import these in endpoint files to add consistent error responses.
"""

from typing import Dict, Any


def _problem(status: int, title: str, detail: str, code: str) -> Dict[str, Any]:
    return {
        "application/problem+json": {
            "example": {
                "type": f"https://trackpro.dev/problems/{code.lower().replace('_', '-')}",
                "title": title,
                "status": status,
                "detail": detail,
                "code": code,
                "timestamp": "2026-01-29T10:30:00Z",
                "trace_id": "abc123def456",
            }
        }
    }


# Reusable response definitions for OpenAPI
ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    401: {
        "description": "Unauthorized - Technician identity required",
        "content": _problem(401, "Unauthorized", "Technician identity required", "AUTH_001"),
    },
    403: {
        "description": "Forbidden - Job is not assigned to the caller",
        "content": _problem(403, "Forbidden", "Job is not assigned to this technician", "AUTH_002"),
    },
    404: {
        "description": "Not Found - Job or tracking code does not exist",
        "content": _problem(404, "Not Found", "Job with ID 42 was not found", "RES_001"),
    },
    422: {
        "description": "Validation Error - Payload failed validation",
        "content": _problem(422, "Validation Error", "latitude must be between -90 and 90", "VAL_001"),
    },
}


def get_error_responses(*status_codes: int) -> Dict[int, Dict[str, Any]]:
    """
    Get error response definitions for specified status codes.

    Usage in endpoint:
        @router.get(
            "/{id}",
            responses=get_error_responses(401, 404)
        )
    """
    return {
        code: ERROR_RESPONSES[code]
        for code in status_codes
        if code in ERROR_RESPONSES
    }


LOCATION_ERROR_RESPONSES = get_error_responses(401, 403, 404, 422)
READ_ERROR_RESPONSES = get_error_responses(404)
