from __future__ import annotations

from typing import Any

from cloneguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Invalid argument",
        _error_example(code="INVALID_ARGUMENT", message="Invalid environment", details={"environment": "QA"}),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing actor identity"),
    ),
    403: _response(
        "Forbidden or blocked by policy",
        _error_example(
            code="POLICY_VIOLATION",
            message="Clone request blocked by policy",
            details={
                "violations": [
                    {
                        "policy_name": "NO_PRD_DATABASE_CLONES",
                        "severity": "ERROR",
                        "action": "BLOCK",
                        "message": "DATABASE clones are not allowed in PRD",
                    }
                ]
            },
        ),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Clone not found")),
    409: _response(
        "Quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Clone limit reached for UAT: 2 of 2",
            details={"existing_clones": ["CLONE_DB.SALES_ANALYTICS_JDOE_1"]},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    502: _response(
        "Data platform failure",
        _error_example(code="PARTIAL_FAILURE", message="Clone created but access setup did not complete"),
    ),
    504: _response("Data platform timeout", _error_example(code="TIMEOUT", message="Clone copy timed out")),
}
