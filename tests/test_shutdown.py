from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

import codex_collab.shutdown as shutdown_module
from codex_collab.shutdown import (
    ProcessControl,
    SignalProcessControl,
    TreeKillProcessControl,
    process_control_for,
    shutdown,
)


class RecordingControl(ProcessControl):
    """Process double that exits after a chosen step."""

    def __init__(self, *, exits_after: str | None, graceful: bool = True) -> None:
        self.supports_graceful_exit = graceful
        self.exits_after = exits_after
        self.steps: list[Any] = []
        self._exited = False

    @property
    def returncode(self) -> int | None:
        return 0 if self._exited else None

    async def request_graceful_exit(self) -> None:
        self._record("close_stdin")

    async def terminate(self) -> None:
        self._record("terminate")

    async def force_kill(self) -> None:
        self._record("kill")

    async def wait(self, timeout: float | None) -> bool:
        self.steps.append(("wait", timeout))
        return self._exited

    def _record(self, step: str) -> None:
        self.steps.append(step)
        if step == self.exits_after:
            self._exited = True


def test_shutdown_stops_after_graceful_exit() -> None:
    control = RecordingControl(exits_after="close_stdin")
    asyncio.run(shutdown(control, grace_period=5.0, terminate_period=3.0))
    assert control.steps == ["close_stdin", ("wait", 5.0)]


def test_shutdown_sends_sigterm_after_grace_period() -> None:
    control = RecordingControl(exits_after="terminate")
    asyncio.run(shutdown(control, grace_period=5.0, terminate_period=3.0))
    assert control.steps == [
        "close_stdin",
        ("wait", 5.0),
        "terminate",
        ("wait", 3.0),
    ]


def test_shutdown_kills_process_that_ignores_sigterm() -> None:
    control = RecordingControl(exits_after="kill")
    asyncio.run(shutdown(control, grace_period=5.0, terminate_period=3.0))
    assert control.steps == [
        "close_stdin",
        ("wait", 5.0),
        "terminate",
        ("wait", 3.0),
        "kill",
        ("wait", None),
    ]


def test_tree_kill_shutdown_kills_tree_before_direct_child() -> None:
    control = RecordingControl(exits_after="kill", graceful=False)
    asyncio.run(shutdown(control, grace_period=5.0, terminate_period=3.0))
    assert control.steps == ["close_stdin", "terminate", "kill", ("wait", 3.0)]


def test_process_control_for_picks_platform_implementation(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process: Any = SimpleNamespace(pid=1234, returncode=None, stdin=None)

    monkeypatch.setattr(shutdown_module, "os", SimpleNamespace(name="posix"))
    assert isinstance(process_control_for(process), SignalProcessControl)

    monkeypatch.setattr(shutdown_module, "os", SimpleNamespace(name="nt"))
    control = process_control_for(process)
    assert isinstance(control, TreeKillProcessControl)
    assert control.supports_graceful_exit is False


def test_tree_kill_runs_taskkill_for_process_tree(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[Any, ...]] = []

    class FakeTaskkill:
        returncode = 128

        async def communicate(self) -> tuple[bytes, bytes]:
            return b"", b"not found"

    async def fake_exec(*args: Any, **kwargs: Any) -> FakeTaskkill:
        calls.append(args)
        return FakeTaskkill()

    monkeypatch.setattr(shutdown_module.asyncio, "create_subprocess_exec", fake_exec)
    process: Any = SimpleNamespace(pid=4321, returncode=None, stdin=None)

    asyncio.run(TreeKillProcessControl(process).terminate())
    assert calls == [("taskkill", "/PID", "4321", "/T", "/F")]
