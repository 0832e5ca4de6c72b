from .abort import AbortController, AbortSignal
from .approvals import (
    ApprovalHandler,
    AutoApproveHandler,
    FileApprovalHandler,
    pending_approvals,
    validate_approval_id,
    write_decision,
)
from .client import CodexClient, connect
from .config import CollabSettings
from .errors import (
    ApprovalCancelledError,
    ApprovalError,
    ApprovalTimeoutError,
    CodexAbortError,
    CodexClientClosedError,
    CodexError,
    CodexProcessExitedError,
    CodexProtocolError,
    CodexRequestTimeoutError,
    CodexRPCError,
    CodexSpawnError,
    CodexTimeoutError,
    CodexTransportError,
    CodexTurnTimeoutError,
    InvalidApprovalIdError,
)
from .events import EventAccumulator, EventAccumulatorProtocol
from .models import (
    ApprovalDecision,
    ApprovalPolicy,
    CommandApprovalRequest,
    CommandExec,
    FileChange,
    FileChangeApprovalRequest,
    InitializeResult,
    ReasoningEffort,
    ReviewTarget,
    SandboxMode,
    ThreadConfig,
    TurnResult,
    UNSET,
)
from .transport import LineBuffer, StdioTransport, Transport, WebSocketTransport
from .turns import ReviewOptions, TurnCompletionWatcher, TurnOptions, run_review, run_turn

__all__ = [
    "AbortController",
    "AbortSignal",
    "ApprovalCancelledError",
    "ApprovalDecision",
    "ApprovalError",
    "ApprovalHandler",
    "ApprovalPolicy",
    "ApprovalTimeoutError",
    "AutoApproveHandler",
    "CodexAbortError",
    "CodexClient",
    "CodexClientClosedError",
    "CodexError",
    "CodexProcessExitedError",
    "CodexProtocolError",
    "CodexRequestTimeoutError",
    "CodexRPCError",
    "CodexSpawnError",
    "CodexTimeoutError",
    "CodexTransportError",
    "CodexTurnTimeoutError",
    "CollabSettings",
    "CommandApprovalRequest",
    "CommandExec",
    "EventAccumulator",
    "EventAccumulatorProtocol",
    "FileApprovalHandler",
    "FileChange",
    "FileChangeApprovalRequest",
    "InitializeResult",
    "InvalidApprovalIdError",
    "LineBuffer",
    "ReasoningEffort",
    "ReviewOptions",
    "ReviewTarget",
    "SandboxMode",
    "StdioTransport",
    "ThreadConfig",
    "Transport",
    "TurnCompletionWatcher",
    "TurnOptions",
    "TurnResult",
    "UNSET",
    "WebSocketTransport",
    "connect",
    "pending_approvals",
    "run_review",
    "run_turn",
    "validate_approval_id",
    "write_decision",
]
