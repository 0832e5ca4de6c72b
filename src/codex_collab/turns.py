"""Turn and review orchestration on top of `CodexClient`.

A completion notification for a turn can arrive before the response to the
request that started it, so the completion watcher subscribes before the start
request is sent and buffers completions until their turn id is claimed.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, get_args

from .abort import AbortSignal
from .approvals import ApprovalHandler
from .client import CodexClient, Unsubscribe
from .config import CollabSettings
from .errors import CodexAbortError, CodexProtocolError, CodexTurnTimeoutError
from .events import EventAccumulator, EventAccumulatorProtocol
from .models import (
    ApprovalPolicy,
    CommandApprovalRequest,
    FileChangeApprovalRequest,
    ReasoningEffort,
    ReviewDelivery,
    ReviewTarget,
    TurnResult,
    TurnStatus,
)
from .protocol import (
    DELTA_METHODS,
    ERROR_METHOD,
    ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
    ITEM_COMPLETED_METHOD,
    ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
    ITEM_STARTED_METHOD,
    REVIEW_START_METHOD,
    TURN_COMPLETED_METHOD,
    TURN_START_METHOD,
)

logger = logging.getLogger(__name__)

_FINAL_TURN_STATUSES = frozenset(get_args(TurnStatus))


@dataclass(slots=True)
class _BufferedCompletion:
    turn_id: str
    params: Mapping[str, Any]
    received_at: float


class TurnCompletionWatcher:
    """Correlates `turn/completed` notifications with the turn being waited on.

    Completions for other turn ids stay buffered and never satisfy a wait.
    Buffered entries older than `max_age` seconds, or beyond the newest
    `max_buffered`, are dropped. `max_age=None` uses the wait timeout.
    """

    def __init__(
        self,
        client: CodexClient,
        *,
        max_buffered: int = 64,
        max_age: float | None = None,
    ) -> None:
        self._client = client
        self._max_buffered = max_buffered
        self._max_age = max_age
        self._buffer: deque[_BufferedCompletion] = deque()
        self._waiting_for: str | None = None
        self._future: asyncio.Future[Mapping[str, Any]] | None = None
        self._unsubscribe: Unsubscribe | None = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    @property
    def buffered_turn_ids(self) -> list[str]:
        return [entry.turn_id for entry in self._buffer]

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._client.on(TURN_COMPLETED_METHOD, self._on_completed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def wait_for(
        self,
        turn_id: str,
        timeout: float,
        signal: AbortSignal | None = None,
    ) -> Mapping[str, Any]:
        """Return the completion params for `turn_id`.

        Raises:
            CodexTurnTimeoutError: If no matching completion arrives in time.
            CodexAbortError: If `signal` is aborted first.
            CodexTransportError: If the client closes or the peer exits first.
        """
        started = time.monotonic()
        if self._max_age is None:
            self._max_age = timeout
        waiters: list[asyncio.Future[Any]] = []
        try:
            buffered = self._take(turn_id)
            if buffered is not None:
                return buffered
            if signal is not None and signal.aborted:
                raise CodexAbortError(_abort_message(turn_id, signal))

            loop = asyncio.get_running_loop()
            future: asyncio.Future[Mapping[str, Any]] = loop.create_future()
            self._waiting_for = turn_id
            self._future = future
            disconnected = asyncio.ensure_future(self._client.wait_disconnected())
            waiters = [future, disconnected]
            aborted: asyncio.Future[Any] | None = None
            if signal is not None:
                aborted = asyncio.ensure_future(signal.wait())
                waiters.append(aborted)

            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if future in done:
                return future.result()
            if aborted is not None and aborted in done:
                assert signal is not None
                raise CodexAbortError(_abort_message(turn_id, signal))
            if disconnected in done:
                raise disconnected.result()

            elapsed = time.monotonic() - started
            raise CodexTurnTimeoutError(
                f"Turn {turn_id} timed out after {elapsed:.1f}s",
                timeout=timeout,
                turn_id=turn_id,
            )
        finally:
            self._waiting_for = None
            self._future = None
            for waiter in waiters[1:]:
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter
            self.detach()

    def _on_completed(self, params: Any) -> None:
        turn_id = _completed_turn_id(params)
        if turn_id is None:
            logger.debug("ignoring turn/completed without a turn id")
            return
        if (
            turn_id == self._waiting_for
            and self._future is not None
            and not self._future.done()
        ):
            self._future.set_result(params)
            return
        self._buffer.append(
            _BufferedCompletion(turn_id=turn_id, params=params, received_at=time.monotonic())
        )
        self._evict()

    def _take(self, turn_id: str) -> Mapping[str, Any] | None:
        self._evict()
        for entry in self._buffer:
            if entry.turn_id == turn_id:
                self._buffer.remove(entry)
                return entry.params
        return None

    def _evict(self) -> None:
        if self._max_age is not None:
            cutoff = time.monotonic() - self._max_age
            while self._buffer and self._buffer[0].received_at < cutoff:
                stale = self._buffer.popleft()
                logger.debug("dropping stale completion for turn %s", stale.turn_id)
        while len(self._buffer) > self._max_buffered:
            dropped = self._buffer.popleft()
            logger.debug("completion buffer full; dropping turn %s", dropped.turn_id)


@dataclass(slots=True)
class TurnOptions:
    """Per-turn collaborators and `turn/start` overrides.

    `None` fields are left out of the start request. Without an approval
    handler, approval requests are declined.
    """

    accumulator: EventAccumulatorProtocol = field(default_factory=EventAccumulator)
    approval_handler: ApprovalHandler | None = None
    timeout: float | None = None
    cwd: str | None = None
    model: str | None = None
    effort: ReasoningEffort | None = None
    approval_policy: ApprovalPolicy | None = None
    sandbox_policy: dict[str, Any] | None = None
    signal: AbortSignal | None = None


@dataclass(slots=True)
class ReviewOptions(TurnOptions):
    delivery: ReviewDelivery | None = None


async def run_turn(
    client: CodexClient,
    thread_id: str,
    input: str | Sequence[Mapping[str, Any]],
    options: TurnOptions | None = None,
) -> TurnResult:
    """Start a turn on `thread_id` and wait for its result."""
    opts = options if options is not None else TurnOptions()
    if isinstance(input, str):
        items: list[Any] = [{"type": "text", "text": input}]
    else:
        items = [dict(item) for item in input]

    params: dict[str, Any] = {"threadId": thread_id, "input": items}
    for key, value in (
        ("cwd", opts.cwd),
        ("model", opts.model),
        ("effort", opts.effort),
        ("approvalPolicy", opts.approval_policy),
        ("sandboxPolicy", opts.sandbox_policy),
    ):
        if value is not None:
            params[key] = value
    return await _execute_turn(client, TURN_START_METHOD, params, opts)


async def run_review(
    client: CodexClient,
    thread_id: str,
    target: ReviewTarget,
    options: ReviewOptions | None = None,
) -> TurnResult:
    """Start a review on `thread_id` and wait for its result."""
    opts = options if options is not None else ReviewOptions()
    params: dict[str, Any] = {"threadId": thread_id, "target": dict(target)}
    if opts.delivery is not None:
        params["delivery"] = opts.delivery
    return await _execute_turn(client, REVIEW_START_METHOD, params, opts)


async def _execute_turn(
    client: CodexClient,
    method: str,
    params: dict[str, Any],
    options: TurnOptions,
) -> TurnResult:
    accumulator = options.accumulator
    timeout = options.timeout if options.timeout is not None else _default_turn_timeout()
    started = time.monotonic()
    accumulator.reset()

    unsubscribes = _register_handlers(client, options)
    watcher = TurnCompletionWatcher(client)
    watcher.attach()
    try:
        response = await client.request(method, params)
        turn_id = _start_response_turn_id(response)
        if turn_id is None:
            raise CodexProtocolError(f"{method} response missing turn id")
        logger.debug("%s started turn %s", method, turn_id)
        completed = await watcher.wait_for(turn_id, timeout, options.signal)
    finally:
        watcher.detach()
        for unsubscribe in reversed(unsubscribes):
            unsubscribe()

    accumulator.flush()
    turn = completed.get("turn")
    turn = turn if isinstance(turn, Mapping) else {}
    status = turn.get("status")
    if status not in _FINAL_TURN_STATUSES:
        raise CodexProtocolError(f"turn/completed has non-final status: {status!r}")

    return TurnResult(
        status=status,
        output=accumulator.output,
        files_changed=accumulator.files_changed,
        commands_run=accumulator.commands_run,
        error=_turn_error_message(turn),
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def _register_handlers(client: CodexClient, options: TurnOptions) -> list[Unsubscribe]:
    accumulator = options.accumulator
    handler = options.approval_handler
    signal = options.signal

    async def on_command_approval(params: Any) -> dict[str, Any]:
        request = CommandApprovalRequest.from_params(params)
        if handler is None:
            logger.warning("no approval handler; declining command %s", request.command)
            return {"decision": "decline"}
        decision = await handler.handle_command_approval(request, signal)
        return {"decision": decision}

    async def on_file_change_approval(params: Any) -> dict[str, Any]:
        request = FileChangeApprovalRequest.from_params(params)
        if handler is None:
            logger.warning("no approval handler; declining file change %s", request.item_id)
            return {"decision": "decline"}
        decision = await handler.handle_file_change_approval(request, signal)
        return {"decision": decision}

    unsubscribes = [
        client.on(ITEM_STARTED_METHOD, accumulator.handle_item_started),
        client.on(ITEM_COMPLETED_METHOD, accumulator.handle_item_completed),
        client.on(ERROR_METHOD, accumulator.handle_error),
    ]
    for delta_method in DELTA_METHODS:
        unsubscribes.append(
            client.on(delta_method, functools.partial(accumulator.handle_delta, delta_method))
        )
    unsubscribes.append(
        client.on_request(ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD, on_command_approval)
    )
    unsubscribes.append(
        client.on_request(ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD, on_file_change_approval)
    )
    return unsubscribes


def _default_turn_timeout() -> float:
    return CollabSettings.from_env().turn_timeout


def _abort_message(turn_id: str, signal: AbortSignal) -> str:
    reason = signal.reason
    if reason is None:
        return f"Turn {turn_id} aborted"
    return f"Turn {turn_id} aborted: {reason}"


def _start_response_turn_id(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    turn = payload.get("turn")
    if isinstance(turn, Mapping):
        turn_id = turn.get("id")
        if isinstance(turn_id, str) and turn_id:
            return turn_id
    direct = payload.get("turnId")
    return direct if isinstance(direct, str) and direct else None


def _completed_turn_id(params: Any) -> str | None:
    if not isinstance(params, Mapping):
        return None
    turn = params.get("turn")
    if not isinstance(turn, Mapping):
        return None
    turn_id = turn.get("id")
    return turn_id if isinstance(turn_id, str) else None


def _turn_error_message(turn: Mapping[str, Any]) -> str | None:
    error = turn.get("error")
    if not isinstance(error, Mapping):
        return None
    message = error.get("message")
    return message if isinstance(message, str) else None
