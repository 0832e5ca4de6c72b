"""Shutdown escalation for the app-server child process.

`shutdown()` is the single escalation policy. Platform differences live in the
two `ProcessControl` implementations, chosen once by `process_control_for()`:

- POSIX: close stdin, wait, SIGTERM, wait, SIGKILL.
- Windows: close stdin, then kill the whole process tree before the direct
  child. When `codex` is a `.cmd` wrapper, killing the direct child first
  removes the pid that `taskkill /T` needs to reach the real app-server.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

TASKKILL_TIMEOUT = 5.0
# taskkill exit status when the target process is already gone.
_TASKKILL_NOT_FOUND = 128


class ProcessControl(ABC):
    """Capabilities the shutdown policy needs from a running process."""

    #: False where the platform has no graceful intermediate step.
    supports_graceful_exit: bool = True

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        raise NotImplementedError

    @abstractmethod
    async def request_graceful_exit(self) -> None:
        """Ask the process to exit on its own (close its stdin)."""
        raise NotImplementedError

    @abstractmethod
    async def terminate(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def force_kill(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def wait(self, timeout: float | None) -> bool:
        """Wait for exit; return True if the process has exited."""
        raise NotImplementedError


class _AsyncioProcessControl(ProcessControl):
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def request_graceful_exit(self) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (OSError, RuntimeError) as exc:
            if self._process.returncode is None:
                logger.warning("closing app-server stdin failed: %s", exc)

    async def wait(self, timeout: float | None) -> bool:
        if self._process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def force_kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        except OSError as exc:
            if self._process.returncode is None:
                logger.warning("killing app-server failed: %s", exc)


class SignalProcessControl(_AsyncioProcessControl):
    """POSIX control: SIGTERM then SIGKILL."""

    supports_graceful_exit = True

    async def terminate(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(signal.SIGTERM)


class TreeKillProcessControl(_AsyncioProcessControl):
    """Windows control: no SIGTERM, so terminate is a process-tree kill."""

    supports_graceful_exit = False

    async def terminate(self) -> None:
        pid = self._process.pid
        if not pid or self._process.returncode is not None:
            return
        try:
            taskkill = await asyncio.create_subprocess_exec(
                "taskkill",
                "/PID",
                str(pid),
                "/T",
                "/F",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(
                taskkill.communicate(),
                timeout=TASKKILL_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("taskkill did not finish within %.1fs", TASKKILL_TIMEOUT)
            return
        except OSError as exc:
            logger.warning("process tree cleanup failed: %s", exc)
            return

        if taskkill.returncode not in (0, _TASKKILL_NOT_FOUND):
            detail = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
            logger.warning(
                "taskkill exited %s%s",
                taskkill.returncode,
                f": {detail}" if detail else "",
            )


def process_control_for(process: asyncio.subprocess.Process) -> ProcessControl:
    """Pick the control implementation for the current platform."""
    if os.name == "nt":
        return TreeKillProcessControl(process)
    return SignalProcessControl(process)


async def shutdown(
    control: ProcessControl,
    *,
    grace_period: float = 5.0,
    terminate_period: float = 3.0,
) -> None:
    """Stop a process, escalating from a graceful request to a hard kill."""
    await control.request_graceful_exit()

    if not control.supports_graceful_exit:
        await control.terminate()
        await control.force_kill()
        if not await control.wait(terminate_period):
            logger.warning("app-server still running after process tree kill")
        return

    if await control.wait(grace_period):
        return
    logger.debug("app-server did not exit after %.1fs; sending SIGTERM", grace_period)
    await control.terminate()
    if await control.wait(terminate_period):
        return
    logger.warning(
        "app-server ignored SIGTERM for %.1fs; killing it",
        terminate_period,
    )
    await control.force_kill()
    await control.wait(None)
