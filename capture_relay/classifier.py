"""Maps raw backend responses onto the tagged shapes the rest of the relay works with."""

import json
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError

from capture_relay.errors import MalformedResponseError
from capture_relay.models import (
    Classification,
    Deferred,
    ErrorInfo,
    Immediate,
    Malformed,
    PollStatus,
    RawResponse,
    StatusPayload,
    Terminal,
)

DEFERRED_STATUSES = frozenset({"pending", "processing"})
FAILED_STATUSES = frozenset({"failed", "error"})

_POLL_STATUS_ALIASES = {
    "pending": PollStatus.processing,
    "processing": PollStatus.processing,
    "completed": PollStatus.completed,
    "failed": PollStatus.failed,
    "error": PollStatus.failed,
}


def _decode(raw: RawResponse) -> Any:
    if not raw.body:
        raise ValueError("empty body")
    return json.loads(raw.body)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_error(value: Any, fallback_message: str = "Backend reported a failure") -> ErrorInfo:
    if isinstance(value, dict):
        code = value.get("code")
        message = value.get("message")
        return ErrorInfo(
            code=str(code) if code else "UNKNOWN_ERROR",
            message=str(message) if message else fallback_message,
        )
    if value:
        return ErrorInfo(code="UNKNOWN_ERROR", message=str(value))
    return ErrorInfo(code="UNKNOWN_ERROR", message=fallback_message)


def classify(raw: RawResponse) -> Classification:
    """
    Classify the response to a capture POST.

    - no ``requestId``: Immediate, body passed through untouched
    - ``requestId`` with status pending/processing: Deferred
    - ``requestId`` with any other status: Terminal, never tracked
    - anything that is not a JSON object of that shape: Malformed

    ``estimatedDuration`` is sent in seconds and converted to milliseconds.
    """
    try:
        body = _decode(raw)
    except ValueError as e:
        logger.warning(f"Response body is not JSON: {e}")
        return Malformed(reason=f"Response body is not valid JSON: {e}")

    if not isinstance(body, dict):
        return Malformed(reason=f"Expected a JSON object, got {type(body).__name__}")

    if body.get("requestId") is None:
        return Immediate(payload=body)

    request_id = body["requestId"]
    status = body.get("status")
    if not isinstance(request_id, str) or not request_id.strip():
        return Malformed(reason="requestId must be a non-empty string")
    if not isinstance(status, str):
        return Malformed(reason="status must be a string when requestId is present")

    if status in DEFERRED_STATUSES:
        estimated = body.get("estimatedDuration")
        if estimated is not None and (not _is_number(estimated) or estimated < 0):
            return Malformed(reason="estimatedDuration must be a non-negative number")
        message = body.get("message")
        return Deferred(
            request_id=request_id,
            status=status,
            estimated_duration_ms=round(estimated * 1000) if estimated is not None else None,
            message=message if isinstance(message, str) else None,
        )

    error: Optional[ErrorInfo] = None
    if status in FAILED_STATUSES:
        error = parse_error(body.get("error"))
    return Terminal(
        request_id=request_id,
        status=status,
        payload=body,
        result=body.get("result"),
        error=error,
    )


def parse_status(raw: RawResponse) -> StatusPayload:
    """Validates a status poll response, raising MalformedResponseError if it cannot be used"""
    try:
        body = _decode(raw)
    except ValueError as e:
        raise MalformedResponseError(f"Status response is not valid JSON: {e}")

    if not isinstance(body, dict):
        raise MalformedResponseError("Status response is not a JSON object")

    raw_status = body.get("status")
    status = _POLL_STATUS_ALIASES.get(raw_status) if isinstance(raw_status, str) else None
    if status is None:
        raise MalformedResponseError(f"Unknown status in poll response: {raw_status!r}")

    progress = body.get("progress")
    if progress is not None and not _is_number(progress):
        raise MalformedResponseError("progress must be a number")

    message = body.get("message")
    error = None
    if status is PollStatus.failed:
        error = parse_error(body.get("error"), fallback_message=message or "Backend reported a failure")

    try:
        return StatusPayload(
            status=status,
            progress=progress,
            message=message if isinstance(message, str) else None,
            result=body.get("result"),
            error=error,
        )
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid status response: {e.errors()[0]['msg']}")
