from __future__ import annotations

from typing import Any, ClassVar, Literal, TypeAlias

#: Closed set of error kinds callers can branch on instead of message text.
ErrorKind: TypeAlias = Literal[
    "transport",
    "protocol",
    "rpc",
    "timeout",
    "approval",
    "cancelled",
]


class CodexError(Exception):
    """Base exception for the codex-collab package."""

    kind: ClassVar[ErrorKind] = "protocol"


class CodexTransportError(CodexError):
    """Raised when the underlying transport fails or disconnects unexpectedly."""

    kind: ClassVar[ErrorKind] = "transport"


class CodexSpawnError(CodexTransportError):
    """Raised when the app-server process cannot be started."""


class CodexProcessExitedError(CodexTransportError):
    """Raised for requests in flight when the app-server process goes away."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CodexClientClosedError(CodexTransportError):
    """Raised for requests issued on, or pending in, a closed client."""


class CodexProtocolError(CodexError):
    """Raised when the app-server sends a structurally unusable payload."""

    kind: ClassVar[ErrorKind] = "protocol"


class CodexRPCError(CodexError):
    """Raised when the app-server answers a request with an error response."""

    kind: ClassVar[ErrorKind] = "rpc"

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
        method: str | None = None,
    ) -> None:
        """Create an RPC error.

        Args:
            message: Error message reported by the server.
            code: Numeric JSON-RPC error code.
            data: Optional server-provided error payload.
            method: Request method that failed, when known.
        """
        detail = f"JSON-RPC error {code}: {message}"
        if method:
            detail = f"{method} failed: {detail}"
        if data is not None:
            detail = f"{detail} ({data!r})"
        super().__init__(detail)
        self.code = code
        self.message = message
        self.data = data
        self.method = method


class CodexTimeoutError(CodexError):
    """Raised when a request or turn wait exceeds its timeout policy."""

    kind: ClassVar[ErrorKind] = "timeout"

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class CodexRequestTimeoutError(CodexTimeoutError):
    """Raised when no response arrives for a request in time."""


class CodexTurnTimeoutError(CodexTimeoutError):
    """Raised when no completion notification arrives for a turn in time."""

    def __init__(self, message: str, *, timeout: float, turn_id: str) -> None:
        super().__init__(message, timeout=timeout)
        self.turn_id = turn_id


class CodexAbortError(CodexError):
    """Raised when a turn wait is stopped through an abort signal."""

    kind: ClassVar[ErrorKind] = "cancelled"


class ApprovalError(CodexError):
    """Base exception for approval resolution failures."""

    kind: ClassVar[ErrorKind] = "approval"


class InvalidApprovalIdError(ApprovalError):
    """Raised when an approval id is not safe to use as a file name."""


class ApprovalCancelledError(ApprovalError):
    """Raised when an approval wait is aborted before a decision arrives."""

    def __init__(self, message: str, *, approval_id: str) -> None:
        super().__init__(message)
        self.approval_id = approval_id


class ApprovalTimeoutError(ApprovalError):
    """Raised when no decision arrives before the approval wait ceiling."""

    def __init__(self, message: str, *, approval_id: str, timeout: float) -> None:
        super().__init__(message)
        self.approval_id = approval_id
        self.timeout = timeout
