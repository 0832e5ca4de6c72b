from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias, TypedDict

from pydantic import BaseModel, ConfigDict, Field

from .errors import CodexProtocolError


class InitializeResult(BaseModel):
    """Parsed result for the `initialize` handshake response.

    Attributes:
        user_agent: User-agent string reported by the server, if present.
        server_info: Optional server identity/details object.
        raw: Full raw initialize result payload.
    """

    user_agent: str | None = None
    server_info: dict[str, Any] | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class FileChange(BaseModel):
    """One successfully applied file change collected during a turn."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: str
    diff: str = ""


class CommandExec(BaseModel):
    """One successfully completed command execution collected during a turn."""

    model_config = ConfigDict(frozen=True)

    command: str
    exit_code: int | None = None
    duration_ms: int | None = None


#: Terminal status of a turn as reported by `turn/completed`.
TurnStatus: TypeAlias = Literal["completed", "interrupted", "failed"]


class TurnResult(BaseModel):
    """Structured outcome of one orchestrated turn or review.

    Attributes:
        status: Final turn status taken from the completion notification.
        output: Agent text assembled from streamed events.
        files_changed: File changes whose items completed successfully.
        commands_run: Command executions whose items completed successfully.
        error: Turn error message when the server reported one.
        duration_ms: Wall-clock duration from start request to completion.
    """

    model_config = ConfigDict(frozen=True)

    status: TurnStatus
    output: str = ""
    files_changed: list[FileChange] = Field(default_factory=list)
    commands_run: list[CommandExec] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


class UnsetType:
    """Sentinel type representing an omitted configuration field."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"


UNSET = UnsetType()

#: Approval policy accepted by thread/turn configuration fields.
ApprovalPolicy: TypeAlias = Literal["untrusted", "on-failure", "on-request", "never"]

#: Thread-level sandbox mode accepted by thread/start and thread/resume.
SandboxMode: TypeAlias = Literal["read-only", "workspace-write", "danger-full-access"]

#: Reasoning effort level, lowest to highest.
ReasoningEffort: TypeAlias = Literal["none", "minimal", "low", "medium", "high", "xhigh"]


@dataclass(slots=True)
class ThreadConfig:
    """Thread-level configuration used by thread start/resume calls.

    Use `UNSET` (default) to omit a field from the request payload.
    Use `None` to explicitly send JSON `null` where the protocol accepts it.
    """

    cwd: str | None | UnsetType = UNSET
    model: str | None | UnsetType = UNSET
    approval_policy: ApprovalPolicy | None | UnsetType = UNSET
    sandbox: SandboxMode | None | UnsetType = UNSET
    config: dict[str, Any] | None | UnsetType = UNSET


def is_unset(value: Any) -> bool:
    return isinstance(value, UnsetType)


class TextInput(TypedDict):
    """Plain-text user input item for `turn/start`."""

    type: Literal["text"]
    text: str


class UncommittedChangesTarget(TypedDict):
    type: Literal["uncommittedChanges"]


class BaseBranchTarget(TypedDict):
    type: Literal["baseBranch"]
    branch: str


class _CommitTargetRequired(TypedDict):
    type: Literal["commit"]
    sha: str


class CommitTarget(_CommitTargetRequired, total=False):
    title: str


class CustomTarget(TypedDict):
    type: Literal["custom"]
    instructions: str


ReviewTarget: TypeAlias = (
    UncommittedChangesTarget | BaseBranchTarget | CommitTarget | CustomTarget
)

#: Where review output lands: the same thread, or a detached review thread.
ReviewDelivery: TypeAlias = Literal["inline", "detached"]

#: Decision returned to the server for one approval request.
ApprovalDecision: TypeAlias = Literal["accept", "acceptForSession", "decline", "cancel"]

APPROVAL_DECISIONS: frozenset[str] = frozenset(
    {"accept", "acceptForSession", "decline", "cancel"}
)


@dataclass(slots=True)
class CommandApprovalRequest:
    """Server-initiated approval request for one command execution item."""

    thread_id: str
    turn_id: str
    item_id: str
    approval_id: str | None = None
    reason: str | None = None
    command: str | None = None
    cwd: str | None = None
    command_actions: list[dict[str, Any]] | None = None

    @classmethod
    def from_params(cls, params: Any) -> CommandApprovalRequest:
        method = "item/commandExecution/requestApproval"
        mapping = _require_mapping(params, method)
        actions_value = mapping.get("commandActions")
        command_actions: list[dict[str, Any]] | None = None
        if isinstance(actions_value, list):
            command_actions = [
                dict(action) for action in actions_value if isinstance(action, Mapping)
            ]
        return cls(
            thread_id=_require_string_field(mapping, "threadId", method),
            turn_id=_require_string_field(mapping, "turnId", method),
            item_id=_require_string_field(mapping, "itemId", method),
            approval_id=_optional_string(mapping.get("approvalId")),
            reason=_optional_string(mapping.get("reason")),
            command=_optional_string(mapping.get("command")),
            cwd=_optional_string(mapping.get("cwd")),
            command_actions=command_actions,
        )


@dataclass(slots=True)
class FileChangeApprovalRequest:
    """Server-initiated approval request for one file-change item."""

    thread_id: str
    turn_id: str
    item_id: str
    reason: str | None = None
    grant_root: str | None = None

    @classmethod
    def from_params(cls, params: Any) -> FileChangeApprovalRequest:
        method = "item/fileChange/requestApproval"
        mapping = _require_mapping(params, method)
        return cls(
            thread_id=_require_string_field(mapping, "threadId", method),
            turn_id=_require_string_field(mapping, "turnId", method),
            item_id=_require_string_field(mapping, "itemId", method),
            reason=_optional_string(mapping.get("reason")),
            grant_root=_optional_string(mapping.get("grantRoot")),
        )


ApprovalRequest: TypeAlias = CommandApprovalRequest | FileChangeApprovalRequest


def _require_mapping(params: Any, method: str) -> Mapping[str, Any]:
    if not isinstance(params, Mapping):
        raise CodexProtocolError(f"{method} received invalid params")
    return params


def _require_string_field(params: Mapping[str, Any], key: str, method: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value:
        raise CodexProtocolError(f"{method} missing required string field: {key}")
    return value


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) else None
