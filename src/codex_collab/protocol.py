from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

RequestId: TypeAlias = int | str

# Codex app-server envelopes carry no "jsonrpc" version field.

# Handshake.
INITIALIZE_METHOD = "initialize"
INITIALIZED_METHOD = "initialized"

# Client -> server requests.
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"
REVIEW_START_METHOD = "review/start"

# Server -> client notifications.
TURN_COMPLETED_METHOD = "turn/completed"
ITEM_STARTED_METHOD = "item/started"
ITEM_COMPLETED_METHOD = "item/completed"
ERROR_METHOD = "error"
AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
COMMAND_OUTPUT_DELTA_METHOD = "item/commandExecution/outputDelta"
FILE_CHANGE_OUTPUT_DELTA_METHOD = "item/fileChange/outputDelta"
REASONING_SUMMARY_DELTA_METHOD = "item/reasoning/summaryTextDelta"

DELTA_METHODS = (
    AGENT_MESSAGE_DELTA_METHOD,
    COMMAND_OUTPUT_DELTA_METHOD,
    FILE_CHANGE_OUTPUT_DELTA_METHOD,
    REASONING_SUMMARY_DELTA_METHOD,
)

# Server -> client requests.
ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD = "item/commandExecution/requestApproval"
ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD = "item/fileChange/requestApproval"

# Legacy event streams duplicated by the v2 item notifications.
DEFAULT_OPT_OUT_NOTIFICATION_METHODS = (
    "codex/event/agent_message_content_delta",
    "codex/event/reasoning_content_delta",
    "codex/event/item_started",
    "codex/event/item_completed",
    "codex/event/task_started",
    "codex/event/task_complete",
)

INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

_LOG_PREVIEW_CHARS = 200


@dataclass(frozen=True, slots=True)
class Request:
    """Inbound or outbound request expecting a response."""

    id: RequestId
    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class Notification:
    """One-way message with no reply expected."""

    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class Response:
    """Successful reply correlated to a request id."""

    id: RequestId
    result: Any


@dataclass(frozen=True, slots=True)
class ErrorObject:
    """Error payload carried by an error response."""

    code: int
    message: str
    data: Any = None


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    """Failed reply correlated to a request id."""

    id: RequestId
    error: ErrorObject


Message: TypeAlias = Request | Notification | Response | ErrorResponse


def make_request(
    request_id: RequestId,
    method: str,
    params: Any = None,
) -> dict[str, Any]:
    """Build a request envelope."""
    payload: dict[str, Any] = {"id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    """Build a notification envelope, omitting `params` when absent."""
    payload: dict[str, Any] = {"method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_result_response(request_id: RequestId, result: Any) -> dict[str, Any]:
    """Build a success response envelope; `result` is always present."""
    return {"id": request_id, "result": result}


def make_error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build an error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"id": request_id, "error": error}


def encode_message(payload: Mapping[str, Any]) -> str:
    """Serialize one envelope as a newline-terminated JSON line."""
    return json.dumps(dict(payload), separators=(",", ":")) + "\n"


def format_request(request_id: RequestId, method: str, params: Any = None) -> str:
    return encode_message(make_request(request_id, method, params))


def format_notification(method: str, params: Any = None) -> str:
    return encode_message(make_notification(method, params))


def format_response(request_id: RequestId, result: Any) -> str:
    return encode_message(make_result_response(request_id, result))


def format_error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> str:
    return encode_message(make_error_response(request_id, code, message, data))


def parse_message(line: str) -> Message | None:
    """Parse one line into a classified message.

    Returns None for anything that is not a protocol message. Each rejection is
    logged once; no exception escapes, so one bad line never ends a read loop.
    """
    try:
        raw = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("unparseable message from app server: %s", line[:_LOG_PREVIEW_CHARS])
        return None

    if not isinstance(raw, dict):
        logger.warning("ignoring non-object message: %s", line[:_LOG_PREVIEW_CHARS])
        return None

    message = classify_message(raw)
    if message is None:
        logger.warning("ignoring non-protocol message: %s", line[:_LOG_PREVIEW_CHARS])
    return message


def classify_message(payload: Mapping[str, Any]) -> Message | None:
    """Map a decoded object onto its message variant by key presence."""
    has_method = "method" in payload
    has_id = "id" in payload

    if has_method and not isinstance(payload["method"], str):
        return None
    if has_id and not _is_request_id(payload["id"]):
        return None

    if has_id and has_method:
        return Request(id=payload["id"], method=payload["method"], params=payload.get("params"))

    if has_method:
        return Notification(method=payload["method"], params=payload.get("params"))

    if not has_id:
        return None

    if "error" in payload:
        error = _parse_error_object(payload["error"])
        if error is None:
            return None
        return ErrorResponse(id=payload["id"], error=error)

    if "result" in payload:
        return Response(id=payload["id"], result=payload["result"])

    return None


def _is_request_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, str))


def _parse_error_object(value: Any) -> ErrorObject | None:
    if not isinstance(value, Mapping):
        return None
    code = value.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        code = 0
    message = value.get("message")
    if not isinstance(message, str):
        message = "JSON-RPC error"
    return ErrorObject(code=code, message=message, data=value.get("data"))
