from __future__ import annotations

from typing import Any

from newsletter_tracker.apps.api.response import ErrorBody


def _error(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorBody,
        "description": description,
        "content": {
            "application/json": {
                "example": {"success": False, "code": code, "message": message},
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error("Not found", code="NOT_FOUND", message="Subscriber not found"),
    422: _error("Validation error", code="VALIDATION_ERROR", message="Email and first name are required"),
    500: _error("Storage failure", code="STORAGE_ERROR", message="Storage operation failed"),
}

ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    401: _error("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid admin key"),
}

DIRECTORY_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    502: _error("Directory unavailable", code="EXTERNAL_SERVICE_ERROR", message="Directory request failed"),
}
