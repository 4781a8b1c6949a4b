"""Consistent JSON error bodies and in-stream error lines for the Athrean API."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    GENERATION_FAILED = "GENERATION_FAILED"
    STREAM_ERROR = "STREAM_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.MODEL_NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.GENERATION_FAILED: 500,
    ErrorCode.STREAM_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

_RETRYABLE = frozenset({ErrorCode.RATE_LIMITED, ErrorCode.SERVICE_UNAVAILABLE, ErrorCode.STREAM_ERROR})


def is_retryable(code: ErrorCode) -> bool:
    return code in _RETRYABLE


def error_response(
    code: ErrorCode,
    message: str,
    details: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"error": code.value, "message": message}
    if details:
        body["details"] = dict(details)
    return JSONResponse(status_code=ERROR_STATUS.get(code, 500), content=body, headers=dict(headers or {}))


def stream_error_line(code: ErrorCode, message: str) -> bytes:
    """An NDJSON ``error`` record; stream consumers fail the run when they read it."""

    payload = {"type": "error", "error": {"code": code.value, "message": message, "retryable": is_retryable(code)}}
    return (json.dumps(payload) + "\n").encode("utf-8")
