import json
import logging

import pytest

from codex_collab.protocol import (
    ErrorResponse,
    Notification,
    Request,
    Response,
    classify_message,
    format_error_response,
    format_notification,
    format_request,
    format_response,
    make_request,
    parse_message,
)


def test_make_request_builds_expected_envelope() -> None:
    payload = make_request(7, "initialize", {"foo": "bar"})
    assert payload == {"id": 7, "method": "initialize", "params": {"foo": "bar"}}
    assert "jsonrpc" not in payload


def test_format_notification_omits_absent_params() -> None:
    line = format_notification("initialized")
    assert line == '{"method":"initialized"}\n'
    assert line.count("\n") == 1


def test_format_request_is_one_compact_line() -> None:
    line = format_request(3, "turn/start", {"threadId": "th-1", "input": []})
    assert line.endswith("\n")
    assert json.loads(line) == {
        "id": 3,
        "method": "turn/start",
        "params": {"threadId": "th-1", "input": []},
    }
    assert ": " not in line


def test_format_response_keeps_null_result() -> None:
    assert json.loads(format_response("abc", None)) == {"id": "abc", "result": None}


def test_format_error_response_includes_data_only_when_given() -> None:
    assert json.loads(format_error_response(4, -32601, "Method not found: x")) == {
        "id": 4,
        "error": {"code": -32601, "message": "Method not found: x"},
    }
    with_data = json.loads(format_error_response(5, -32603, "boom", {"detail": 1}))
    assert with_data["error"]["data"] == {"detail": 1}


def test_parse_message_classifies_each_variant() -> None:
    assert parse_message('{"id":1,"method":"item/fileChange/requestApproval","params":{}}') == Request(
        id=1, method="item/fileChange/requestApproval", params={}
    )
    assert parse_message('{"method":"turn/completed","params":{"x":1}}') == Notification(
        method="turn/completed", params={"x": 1}
    )
    assert parse_message('{"id":"r-1","result":null}') == Response(id="r-1", result=None)

    error = parse_message('{"id":2,"error":{"code":-32000,"message":"nope","data":[1]}}')
    assert isinstance(error, ErrorResponse)
    assert error.id == 2
    assert error.error.code == -32000
    assert error.error.message == "nope"
    assert error.error.data == [1]


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        '"text"',
        '{"method": 5}',
        '{"id": true, "result": 1}',
        '{"id": 1.5, "result": 1}',
        '{"params": {}}',
        '{"id": 9}',
    ],
)
def test_parse_message_rejects_invalid_lines(line: str, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="codex_collab.protocol"):
        assert parse_message(line) is None
    assert len(caplog.records) == 1
    assert line[:200] in caplog.records[0].getMessage()


def test_parse_message_log_preview_is_truncated(caplog: pytest.LogCaptureFixture) -> None:
    line = "x" * 500
    with caplog.at_level(logging.WARNING, logger="codex_collab.protocol"):
        assert parse_message(line) is None
    assert "x" * 201 not in caplog.records[0].getMessage()


def test_classify_message_fills_error_defaults() -> None:
    message = classify_message({"id": 1, "error": {}})
    assert isinstance(message, ErrorResponse)
    assert message.error.code == 0
    assert message.error.message == "JSON-RPC error"


def test_classify_message_accepts_notification_without_params() -> None:
    assert classify_message({"method": "initialized"}) == Notification(method="initialized")


def test_formatted_request_parses_back_to_request() -> None:
    params = {"threadId": "th-1", "input": [{"type": "text", "text": "héllo\nworld"}]}
    assert parse_message(format_request("req-9", "turn/start", params)) == Request(
        id="req-9", method="turn/start", params=params
    )
