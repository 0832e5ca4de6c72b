from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_COMMAND = ("codex", "app-server")
CLIENT_NAME = "codex-collab"
CLIENT_VERSION = "0.1.0"


def _default_data_dir() -> Path:
    return Path.home() / ".codex-collab"


@dataclass(frozen=True, slots=True)
class CollabSettings:
    """Process-wide defaults for connecting to and driving the app-server.

    Every value can be overridden per call through the matching keyword
    argument; `from_env()` layers environment overrides on top of these defaults.

    Attributes:
        command: Argv used to launch the app-server over stdio.
        request_timeout: Seconds to wait for a response to one request.
        turn_timeout: Seconds to wait for a turn or review to complete.
        approval_poll_interval: Seconds between decision-file checks.
        approval_timeout: Ceiling in seconds for one file-based approval wait.
        shutdown_grace_period: Seconds to wait for exit after closing stdin.
        shutdown_terminate_period: Seconds to wait for exit after SIGTERM.
        data_dir: Root directory for approval side-channel files.
        client_name: Name sent in the initialize handshake.
        client_version: Version sent in the initialize handshake.
    """

    command: tuple[str, ...] = DEFAULT_COMMAND
    request_timeout: float = 30.0
    turn_timeout: float = 1200.0
    approval_poll_interval: float = 1.0
    approval_timeout: float = 3600.0
    shutdown_grace_period: float = 5.0
    shutdown_terminate_period: float = 3.0
    data_dir: Path = field(default_factory=_default_data_dir)
    client_name: str = CLIENT_NAME
    client_version: str = CLIENT_VERSION

    @property
    def approvals_dir(self) -> Path:
        return self.data_dir / "approvals"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CollabSettings:
        """Build settings from defaults plus `CODEX_*` environment overrides."""
        env = os.environ if environ is None else environ
        settings = cls()

        command = env.get("CODEX_APP_SERVER_CMD")
        if command:
            settings = replace(settings, command=tuple(shlex.split(command)))

        home = env.get("CODEX_COLLAB_HOME")
        if home:
            settings = replace(settings, data_dir=Path(home).expanduser())

        request_timeout = _positive_float(env, "CODEX_COLLAB_REQUEST_TIMEOUT")
        if request_timeout is not None:
            settings = replace(settings, request_timeout=request_timeout)

        turn_timeout = _positive_float(env, "CODEX_COLLAB_TURN_TIMEOUT")
        if turn_timeout is not None:
            settings = replace(settings, turn_timeout=turn_timeout)

        return settings


def _positive_float(env: Mapping[str, str], name: str) -> float | None:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value
