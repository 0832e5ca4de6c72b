from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from .models import CommandExec, FileChange
from .protocol import AGENT_MESSAGE_DELTA_METHOD

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

#: Only items that finished with one of these statuses count as side effects.
SUCCESSFUL_ITEM_STATUSES = frozenset({"completed"})


class EventAccumulatorProtocol(Protocol):
    """What the turn orchestrator needs from an event accumulator."""

    @property
    def output(self) -> str: ...

    @property
    def files_changed(self) -> list[FileChange]: ...

    @property
    def commands_run(self) -> list[CommandExec]: ...

    def handle_item_started(self, params: Any) -> None: ...

    def handle_item_completed(self, params: Any) -> None: ...

    def handle_delta(self, method: str, params: Any) -> None: ...

    def handle_error(self, params: Any) -> None: ...

    def reset(self) -> None: ...

    def flush(self) -> None: ...


class EventAccumulator:
    """Collects agent text and successful side effects from turn notifications.

    Progress lines (commands started, files edited, mid-turn errors) go to
    `on_progress`, which defaults to the module logger at INFO level.
    """

    def __init__(self, on_progress: ProgressCallback | None = None) -> None:
        self._on_progress = on_progress if on_progress is not None else _log_progress
        self._streamed_output = ""
        self._review_output: str | None = None
        self._files_changed: list[FileChange] = []
        self._commands_run: list[CommandExec] = []
        self._errors: list[str] = []

    @property
    def output(self) -> str:
        """Review text when a review finished, else the streamed agent text."""
        if self._review_output is not None:
            return self._review_output
        return self._streamed_output

    @property
    def files_changed(self) -> list[FileChange]:
        return list(self._files_changed)

    @property
    def commands_run(self) -> list[CommandExec]:
        return list(self._commands_run)

    @property
    def errors(self) -> list[str]:
        """Mid-turn error messages reported by the server."""
        return list(self._errors)

    def handle_item_started(self, params: Any) -> None:
        item = _item_from(params)
        if item is None:
            return
        if item.get("type") == "commandExecution":
            self._progress(f"Running: {item.get('command', '')}")

    def handle_item_completed(self, params: Any) -> None:
        item = _item_from(params)
        if item is None:
            return
        item_type = item.get("type")
        status = item.get("status")

        if item_type == "exitedReviewMode":
            review = item.get("review")
            if isinstance(review, str):
                self._review_output = review
            return

        if item_type == "commandExecution":
            command = str(item.get("command", ""))
            if status not in SUCCESSFUL_ITEM_STATUSES:
                logger.warning("command %s: %s", status or "unfinished", command)
                return
            self._commands_run.append(
                CommandExec(
                    command=command,
                    exit_code=_optional_int(item.get("exitCode")),
                    duration_ms=_optional_int(item.get("durationMs")),
                )
            )
            logger.debug("command: %s (exit %s)", command, item.get("exitCode", "?"))
            return

        if item_type == "fileChange":
            changes = item.get("changes")
            if not isinstance(changes, list):
                return
            if status not in SUCCESSFUL_ITEM_STATUSES:
                for change in changes:
                    if isinstance(change, Mapping):
                        logger.warning(
                            "file change %s: %s", status or "unfinished", change.get("path")
                        )
                return
            for change in changes:
                if not isinstance(change, Mapping):
                    continue
                file_change = FileChange(
                    path=str(change.get("path", "")),
                    kind=_change_kind(change.get("kind")),
                    diff=str(change.get("diff") or ""),
                )
                self._files_changed.append(file_change)
                self._progress(f"Edited: {file_change.path} ({file_change.kind})")

    def handle_delta(self, method: str, params: Any) -> None:
        # Only agent text is assembled; other deltas are display-only streams.
        if method != AGENT_MESSAGE_DELTA_METHOD or not isinstance(params, Mapping):
            return
        delta = params.get("delta")
        if isinstance(delta, str):
            self._streamed_output += delta

    def handle_error(self, params: Any) -> None:
        if not isinstance(params, Mapping):
            return
        error = params.get("error")
        message = error.get("message") if isinstance(error, Mapping) else None
        text = message if isinstance(message, str) and message else "unknown error"
        self._errors.append(text)
        if params.get("willRetry"):
            self._progress(f"Error (retrying): {text}")
        else:
            self._progress(f"Error: {text}")

    def reset(self) -> None:
        self._streamed_output = ""
        self._review_output = None
        self._files_changed = []
        self._commands_run = []
        self._errors = []

    def flush(self) -> None:
        output = self.output
        if output:
            logger.debug("agent output:\n%s", output)

    def _progress(self, line: str) -> None:
        try:
            self._on_progress(line)
        except Exception:
            logger.exception("progress callback failed")


def _log_progress(line: str) -> None:
    logger.info("%s", line)


def _item_from(params: Any) -> Mapping[str, Any] | None:
    if not isinstance(params, Mapping):
        return None
    item = params.get("item")
    return item if isinstance(item, Mapping) else None


def _change_kind(kind: Any) -> str:
    if isinstance(kind, Mapping):
        kind = kind.get("type")
    return kind if isinstance(kind, str) else "update"


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)
