import logging

import pytest

from codex_collab.events import EventAccumulator
from codex_collab.models import CommandExec, FileChange


def test_only_agent_message_deltas_build_output() -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    accumulator.handle_delta("item/agentMessage/delta", {"itemId": "i1", "delta": "Hello "})
    accumulator.handle_delta("item/commandExecution/outputDelta", {"delta": "ls output"})
    accumulator.handle_delta("item/reasoning/summaryTextDelta", {"delta": "thinking"})
    accumulator.handle_delta("item/agentMessage/delta", {"itemId": "i1", "delta": "world"})
    assert accumulator.output == "Hello world"


def test_completed_items_are_collected_with_progress_lines() -> None:
    progress: list[str] = []
    accumulator = EventAccumulator(on_progress=progress.append)

    accumulator.handle_item_started(
        {"item": {"type": "commandExecution", "id": "c1", "command": "pytest -q"}}
    )
    accumulator.handle_item_completed(
        {
            "item": {
                "type": "commandExecution",
                "id": "c1",
                "command": "pytest -q",
                "status": "completed",
                "exitCode": 0,
                "durationMs": 1520,
            }
        }
    )
    accumulator.handle_item_completed(
        {
            "item": {
                "type": "fileChange",
                "id": "f1",
                "status": "completed",
                "changes": [
                    {"path": "src/app.py", "kind": {"type": "update"}, "diff": "@@ -1 +1 @@"},
                    {"path": "README.md", "kind": {"type": "add"}, "diff": "+hi"},
                ],
            }
        }
    )

    assert accumulator.commands_run == [
        CommandExec(command="pytest -q", exit_code=0, duration_ms=1520)
    ]
    assert accumulator.files_changed == [
        FileChange(path="src/app.py", kind="update", diff="@@ -1 +1 @@"),
        FileChange(path="README.md", kind="add", diff="+hi"),
    ]
    assert progress == [
        "Running: pytest -q",
        "Edited: src/app.py (update)",
        "Edited: README.md (add)",
    ]


def test_declined_and_failed_items_are_excluded(caplog: pytest.LogCaptureFixture) -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    with caplog.at_level(logging.WARNING, logger="codex_collab.events"):
        accumulator.handle_item_completed(
            {"item": {"type": "commandExecution", "command": "rm -rf /", "status": "declined"}}
        )
        accumulator.handle_item_completed(
            {
                "item": {
                    "type": "fileChange",
                    "status": "failed",
                    "changes": [{"path": "x.py", "kind": {"type": "delete"}, "diff": ""}],
                }
            }
        )

    assert accumulator.commands_run == []
    assert accumulator.files_changed == []
    messages = [record.getMessage() for record in caplog.records]
    assert "command declined: rm -rf /" in messages
    assert "file change failed: x.py" in messages


def test_only_completed_items_are_recorded(caplog: pytest.LogCaptureFixture) -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    with caplog.at_level(logging.WARNING, logger="codex_collab.events"):
        accumulator.handle_item_completed(
            {"item": {"type": "commandExecution", "command": "rm -rf x", "status": "inProgress"}}
        )
        accumulator.handle_item_completed(
            {
                "item": {
                    "type": "fileChange",
                    "status": "inProgress",
                    "changes": [{"path": "a.py", "kind": {"type": "update"}, "diff": "+x"}],
                }
            }
        )
        accumulator.handle_item_completed({"item": {"type": "commandExecution", "command": "ls"}})

    assert accumulator.commands_run == []
    assert accumulator.files_changed == []
    messages = [record.getMessage() for record in caplog.records]
    assert "command inProgress: rm -rf x" in messages
    assert "file change inProgress: a.py" in messages
    assert "command unfinished: ls" in messages


def test_review_text_overrides_streamed_output() -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    accumulator.handle_delta("item/agentMessage/delta", {"delta": "partial review..."})
    accumulator.handle_item_completed(
        {"item": {"type": "exitedReviewMode", "id": "r1", "review": "No issues found."}}
    )
    assert accumulator.output == "No issues found."


def test_error_notifications_are_recorded() -> None:
    progress: list[str] = []
    accumulator = EventAccumulator(on_progress=progress.append)
    accumulator.handle_error(
        {"error": {"message": "rate limited"}, "willRetry": True, "threadId": "th", "turnId": "t"}
    )
    accumulator.handle_error({"error": {"message": "fatal"}, "willRetry": False})
    assert accumulator.errors == ["rate limited", "fatal"]
    assert progress == ["Error (retrying): rate limited", "Error: fatal"]


def test_reset_clears_everything() -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    accumulator.handle_delta("item/agentMessage/delta", {"delta": "text"})
    accumulator.handle_item_completed(
        {"item": {"type": "exitedReviewMode", "review": "review"}}
    )
    accumulator.handle_item_completed(
        {"item": {"type": "commandExecution", "command": "ls", "status": "completed"}}
    )
    accumulator.handle_error({"error": {"message": "oops"}})
    accumulator.reset()
    assert accumulator.output == ""
    assert accumulator.commands_run == []
    assert accumulator.files_changed == []
    assert accumulator.errors == []


def test_default_progress_goes_to_logger(caplog: pytest.LogCaptureFixture) -> None:
    accumulator = EventAccumulator()
    with caplog.at_level(logging.INFO, logger="codex_collab.events"):
        accumulator.handle_item_started({"item": {"type": "commandExecution", "command": "make"}})
    assert "Running: make" in [record.getMessage() for record in caplog.records]


def test_malformed_params_are_ignored() -> None:
    accumulator = EventAccumulator(on_progress=lambda line: None)
    accumulator.handle_item_started(None)
    accumulator.handle_item_completed({"item": "nope"})
    accumulator.handle_delta("item/agentMessage/delta", ["not", "a", "mapping"])
    accumulator.handle_error("boom")
    assert accumulator.output == ""
    assert accumulator.errors == []
