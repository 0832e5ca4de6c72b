"""Approval resolution for server-initiated approval requests.

`FileApprovalHandler` implements a file-based handshake with an external actor::

    <approvals_dir>/<id>.json       request descriptor, written by the handler
    <approvals_dir>/<id>.decision   decision text, written by the external actor

The handler polls for the decision file and removes both files on every exit
path. `write_decision()` and `pending_approvals()` are the external actor's side.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from .abort import AbortSignal
from .errors import (
    ApprovalCancelledError,
    ApprovalError,
    ApprovalTimeoutError,
    InvalidApprovalIdError,
)
from .models import (
    APPROVAL_DECISIONS,
    ApprovalDecision,
    CommandApprovalRequest,
    FileChangeApprovalRequest,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

_APPROVAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
REQUEST_SUFFIX = ".json"
DECISION_SUFFIX = ".decision"


class ApprovalHandler(Protocol):
    """Turns one approval request into a decision."""

    async def handle_command_approval(
        self,
        request: CommandApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision: ...

    async def handle_file_change_approval(
        self,
        request: FileChangeApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision: ...


class AutoApproveHandler:
    """Accepts every request immediately."""

    async def handle_command_approval(
        self,
        request: CommandApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision:
        return "accept"

    async def handle_file_change_approval(
        self,
        request: FileChangeApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision:
        return "accept"


def validate_approval_id(approval_id: str) -> str:
    """Return `approval_id` if it is safe to use as a file name."""
    if not isinstance(approval_id, str) or not _APPROVAL_ID_PATTERN.match(approval_id):
        raise InvalidApprovalIdError(f"Invalid approval ID: {approval_id!r}")
    return approval_id


class FileApprovalHandler:
    """Resolves approvals through request/decision files in `approvals_dir`."""

    def __init__(
        self,
        approvals_dir: str | os.PathLike[str],
        *,
        on_progress: ProgressCallback | None = None,
        poll_interval: float = 1.0,
        timeout: float = 3600.0,
        command_name: str = "codex-collab",
    ) -> None:
        """Create the handler and its directory.

        Args:
            approvals_dir: Directory shared with the external actor.
            on_progress: Receives human-readable progress lines. Defaults to
                the module logger at INFO level.
            poll_interval: Seconds between decision-file checks.
            timeout: Ceiling in seconds for one approval wait.
            command_name: CLI name shown in the approve/decline hints.
        """
        self._dir = Path(approvals_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._on_progress = on_progress if on_progress is not None else _log_progress
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._command_name = command_name

    @property
    def approvals_dir(self) -> Path:
        return self._dir

    async def handle_command_approval(
        self,
        request: CommandApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision:
        approval_id = validate_approval_id(request.approval_id or request.item_id)
        self._progress("APPROVAL NEEDED")
        self._progress(f"  Command: {request.command or '(no command)'}")
        if request.reason:
            self._progress(f"  Reason: {request.reason}")
        self._announce(approval_id)

        return await self._request_decision(
            approval_id,
            {
                "type": "commandExecution",
                "command": request.command,
                "cwd": request.cwd,
                "reason": request.reason,
                "threadId": request.thread_id,
                "turnId": request.turn_id,
            },
            signal,
        )

    async def handle_file_change_approval(
        self,
        request: FileChangeApprovalRequest,
        signal: AbortSignal | None = None,
    ) -> ApprovalDecision:
        approval_id = validate_approval_id(request.item_id)
        self._progress("APPROVAL NEEDED (file change)")
        if request.reason:
            self._progress(f"  Reason: {request.reason}")
        self._announce(approval_id)

        return await self._request_decision(
            approval_id,
            {
                "type": "fileChange",
                "reason": request.reason,
                "grantRoot": request.grant_root,
                "threadId": request.thread_id,
                "turnId": request.turn_id,
            },
            signal,
        )

    def _announce(self, approval_id: str) -> None:
        self._progress(f"  Approve: {self._command_name} approve {approval_id}")
        self._progress(f"  Decline: {self._command_name} decline {approval_id}")

    def _progress(self, line: str) -> None:
        try:
            self._on_progress(line)
        except Exception:
            logger.exception("progress callback failed")

    def _write_request(self, approval_id: str, descriptor: dict[str, Any]) -> None:
        path = self._dir / f"{approval_id}{REQUEST_SUFFIX}"
        data = json.dumps(descriptor, indent=2).encode("utf-8")
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            logger.error("failed to write approval request %s: %s", path, exc)
            raise

    async def _request_decision(
        self,
        approval_id: str,
        descriptor: dict[str, Any],
        signal: AbortSignal | None,
    ) -> ApprovalDecision:
        decision_path = self._dir / f"{approval_id}{DECISION_SUFFIX}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            self._write_request(approval_id, descriptor)
            while True:
                if signal is not None and signal.aborted:
                    raise ApprovalCancelledError(
                        f"Approval {approval_id} cancelled",
                        approval_id=approval_id,
                    )
                content = _read_decision_file(decision_path)
                if content is not None:
                    return _to_decision(approval_id, content)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ApprovalTimeoutError(
                        f"Approval {approval_id} timed out waiting for decision "
                        f"after {self._timeout:.0f}s",
                        approval_id=approval_id,
                        timeout=self._timeout,
                    )
                delay = min(self._poll_interval, remaining)
                if signal is not None:
                    await signal.sleep(delay)
                else:
                    await asyncio.sleep(delay)
        finally:
            self._cleanup(approval_id)

    def _cleanup(self, approval_id: str) -> None:
        for suffix in (DECISION_SUFFIX, REQUEST_SUFFIX):
            path = self._dir / f"{approval_id}{suffix}"
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("failed to clean up %s: %s", path, exc)


def write_decision(
    approvals_dir: str | os.PathLike[str],
    approval_id: str,
    decision: str,
) -> Path:
    """Record a decision for a pending approval; returns the decision file path.

    The file appears atomically, so a polling handler never reads a partial write.
    """
    validate_approval_id(approval_id)
    if decision not in APPROVAL_DECISIONS:
        raise ValueError(
            f"decision must be one of {sorted(APPROVAL_DECISIONS)}, got {decision!r}"
        )
    directory = Path(approvals_dir)
    if not (directory / f"{approval_id}{REQUEST_SUFFIX}").exists():
        raise ApprovalError(f"No pending approval: {approval_id}")

    target = directory / f"{approval_id}{DECISION_SUFFIX}"
    fd, temp_name = tempfile.mkstemp(dir=directory, prefix=f".{approval_id}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(decision)
        os.replace(temp_name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise
    return target


def pending_approvals(approvals_dir: str | os.PathLike[str]) -> list[str]:
    """Ids of approvals that are waiting for a decision."""
    directory = Path(approvals_dir)
    if not directory.is_dir():
        return []
    return sorted(
        path.stem
        for path in directory.glob(f"*{REQUEST_SUFFIX}")
        if _APPROVAL_ID_PATTERN.match(path.stem)
    )


def _read_decision_file(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None


def _to_decision(approval_id: str, content: str) -> ApprovalDecision:
    if content in APPROVAL_DECISIONS:
        return content  # type: ignore[return-value]
    logger.warning(
        "unrecognized decision %r for approval %s; declining",
        content,
        approval_id,
    )
    return "decline"


def _log_progress(line: str) -> None:
    logger.info("%s", line)
