from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shlex
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Mapping, Sequence
from typing import Any

import websockets

from .errors import CodexSpawnError, CodexTransportError
from .protocol import encode_message
from .shutdown import process_control_for, shutdown

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
_TASK_JOIN_TIMEOUT = 1.0
_EOF = object()

INSTALL_HINT = "Ensure codex CLI is installed: npm install -g @openai/codex"


class Transport(ABC):
    """Abstract transport exchanging newline-delimited protocol messages."""

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources and establish connection."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON-serializable message."""
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> str:
        """Return the next non-empty line; raise `CodexTransportError` at end of stream."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError

    @property
    def returncode(self) -> int | None:
        """Exit status of the peer process, when there is one and it exited."""
        return None

    async def wait_exit(self, timeout: float) -> int | None:
        """Wait up to `timeout` seconds for the peer process exit status."""
        return self.returncode


class LineBuffer:
    """Incremental splitter turning byte chunks into trimmed, non-empty lines.

    A line, or a multibyte character, may straddle any number of chunks.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._partial

    def feed(self, chunk: bytes) -> list[str]:
        self._partial += self._decoder.decode(chunk)
        return self._drain()

    def _drain(self) -> list[str]:
        lines: list[str] = []
        while True:
            newline = self._partial.find("\n")
            if newline == -1:
                break
            line = self._partial[:newline].strip()
            self._partial = self._partial[newline + 1 :]
            if line:
                lines.append(line)
        return lines


class StdioTransport(Transport):
    """Transport over the stdin/stdout pipes of a spawned app-server process."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        grace_period: float = 5.0,
        terminate_period: float = 3.0,
    ) -> None:
        """Configure stdio transport.

        Args:
            command: Command argv used to start the app-server process.
            cwd: Optional subprocess working directory.
            env: Optional environment entries merged over the current environment.
            connect_timeout: Timeout for subprocess creation.
            grace_period: Seconds to wait for exit after closing stdin.
            terminate_period: Seconds to wait for exit after SIGTERM.
        """
        if not command:
            raise ValueError("stdio command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._connect_timeout = connect_timeout
        self._grace_period = grace_period
        self._terminate_period = terminate_period
        self._proc: asyncio.subprocess.Process | None = None
        self._lines: asyncio.Queue[Any] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    async def wait_exit(self, timeout: float) -> int | None:
        """Reap the subprocess if it exits within `timeout` seconds."""
        if self._proc is None:
            return None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        return self._proc.returncode

    async def connect(self) -> None:
        """Start subprocess and its stdout/stderr reader tasks if not running."""
        if self._proc is not None:
            return
        if self._closing:
            raise CodexTransportError("stdio transport is closed")
        env = {**os.environ, **self._env} if self._env is not None else None
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._cwd,
                    env=env,
                ),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise CodexSpawnError(
                f"failed to start app server ({shlex.join(self._command)}): "
                f"{exc.__class__.__name__}: {exc}\n{INSTALL_HINT}"
            ) from exc

        logger.debug("spawned app-server pid=%s: %s", self._proc.pid, self._command)
        self._lines = asyncio.Queue()
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def send(self, payload: Mapping[str, Any]) -> None:
        """Write one JSON line to subprocess stdin."""
        if self._proc is None or self._proc.stdin is None:
            raise CodexTransportError("stdio transport is not connected")
        if self._closing:
            raise CodexTransportError("stdio transport is closed")
        line = encode_message(payload)
        try:
            self._proc.stdin.write(line.encode("utf-8"))
            await self._proc.stdin.drain()
        except (OSError, RuntimeError) as exc:
            raise CodexTransportError(f"failed writing to stdio transport: {exc}") from exc

    async def recv(self) -> str:
        """Return the next buffered line, suspending only when none is queued."""
        if self._lines is None:
            raise CodexTransportError("stdio transport is not connected")
        line = await self._lines.get()
        if line is _EOF:
            # Keep end-of-stream sticky for later callers.
            self._lines.put_nowait(_EOF)
            raise CodexTransportError("stdio transport closed")
        return line

    async def close(self) -> None:
        """Stop the subprocess with the shutdown escalation policy."""
        if self._closing:
            return
        self._closing = True
        proc = self._proc
        if proc is None:
            return

        await shutdown(
            process_control_for(proc),
            grace_period=self._grace_period,
            terminate_period=self._terminate_period,
        )
        for task in (self._reader_task, self._stderr_task):
            await _join_task(task)
        logger.debug("app-server pid=%s exited with %s", proc.pid, proc.returncode)

    async def _read_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        assert self._lines is not None
        stdout = self._proc.stdout
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._lines.put_nowait(line)
            if buffer.pending.strip():
                logger.debug(
                    "dropping unterminated trailing output: %s",
                    buffer.pending[:200],
                )
        except (OSError, ValueError) as exc:
            if not self._closing:
                logger.warning("app-server read loop failed: %s", exc)
        finally:
            self._lines.put_nowait(_EOF)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        stderr = self._proc.stderr
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk).strip()
                if text:
                    logger.warning("app-server stderr: %s", text)
        except (OSError, ValueError) as exc:
            if not self._closing:
                logger.warning("app-server stderr reader failed: %s", exc)


class WebSocketTransport(Transport):
    """Transport over a websocket connection to a listening app-server."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket transport.

        Args:
            url: Websocket endpoint URL.
            headers: Optional request headers, including auth.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._socket: Any = None
        self._buffer = LineBuffer()
        self._lines: deque[str] = deque()
        self._eof = False

    async def connect(self) -> None:
        """Open websocket if not already connected."""
        if self._socket is not None:
            return
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise CodexTransportError(
                "failed to connect websocket transport: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def send(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON text frame over websocket."""
        if self._socket is None:
            raise CodexTransportError("websocket transport is not connected")
        try:
            await self._socket.send(encode_message(payload).rstrip("\n"))
        except Exception as exc:
            raise CodexTransportError("failed writing to websocket transport") from exc

    async def recv(self) -> str:
        """Return the next line; a frame may carry one or several messages."""
        while not self._lines:
            if self._socket is None or self._eof:
                raise CodexTransportError("websocket transport closed")
            try:
                message = await self._socket.recv()
            except Exception as exc:
                self._eof = True
                raise CodexTransportError(
                    f"websocket transport closed ({exc.__class__.__name__})"
                ) from exc
            if isinstance(message, str):
                message = message.encode("utf-8")
            # Frames carry whole messages, so terminate each one.
            self._lines.extend(self._buffer.feed(bytes(message) + b"\n"))
        return self._lines.popleft()

    async def close(self) -> None:
        """Close websocket connection."""
        if self._socket is None:
            return
        socket = self._socket
        self._socket = None
        self._eof = True
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("websocket close failed: %s", exc)


async def _join_task(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=_TASK_JOIN_TIMEOUT)
    except asyncio.TimeoutError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
