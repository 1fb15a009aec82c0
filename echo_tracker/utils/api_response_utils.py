#!/usr/bin/env python3
"""
API Response Utilities
======================
Standardized JSON error bodies for the FastAPI endpoints, and the mapping
from tracker errors to HTTP status codes.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi.responses import JSONResponse

from echo_tracker.errors import NotFoundError, TrackerError, ValidationError


def error_response(message: str, code: int = 400, details: Any = None) -> JSONResponse:
    """Create a standardized error response.

    Examples:
        >>> error_response("Project not found", 404)
        # {"error": {"message": "Project not found", "code": 404, "timestamp": ...}}

        >>> error_response("Invalid input", 400, {"field": "duration"})
        # {"error": {..., "details": {"field": "duration"}}}
    """
    error_obj = {
        "message": message,
        "code": code,
        "timestamp": datetime.now(UTC).replace(tzinfo=None).isoformat() + "Z",
    }

    if details is not None:
        error_obj["details"] = details

    return JSONResponse(status_code=code, content={"error": error_obj})


def status_for(error: TrackerError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    return 500


def tracker_error_response(error: TrackerError) -> JSONResponse:
    return error_response(error.message, status_for(error), error.details)
