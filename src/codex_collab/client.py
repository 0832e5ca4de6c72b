from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .config import CLIENT_NAME, CLIENT_VERSION, CollabSettings
from .errors import (
    CodexClientClosedError,
    CodexProcessExitedError,
    CodexProtocolError,
    CodexRequestTimeoutError,
    CodexRPCError,
    CodexTransportError,
)
from .models import InitializeResult, ThreadConfig, is_unset
from .protocol import (
    DEFAULT_OPT_OUT_NOTIFICATION_METHODS,
    INITIALIZE_METHOD,
    INITIALIZED_METHOD,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_INTERRUPT_METHOD,
    ErrorResponse,
    Notification,
    Request,
    RequestId,
    Response,
    encode_message,
    make_error_response,
    make_notification,
    make_request,
    make_result_response,
    parse_message,
)
from .transport import StdioTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

EXIT_STATUS_TIMEOUT = 1.0

NotificationHandler = Callable[[Any], None]
RequestHandler = Callable[[Any], Any]
Unsubscribe = Callable[[], None]


@dataclass(slots=True)
class _PendingRequest:
    method: str
    future: asyncio.Future[Any]


@dataclass(slots=True, eq=False)
class _Subscription:
    handler: NotificationHandler


class CodexClient:
    """Async client for one app-server connection.

    Correlates requests with responses, fans notifications out to handlers
    registered with `on()`, and answers server-initiated requests through
    handlers registered with `on_request()`.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float = 30.0,
        client_info: Mapping[str, Any] | None = None,
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            request_timeout: Default timeout for request/response calls.
            client_info: Optional `clientInfo` sent in the initialize handshake.
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._client_info = dict(client_info) if client_info is not None else None

        self._next_request_id = 1
        self._pending: dict[RequestId, _PendingRequest] = {}
        self._notification_handlers: dict[str, list[_Subscription]] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._send_lock = asyncio.Lock()
        self._receiver_task: asyncio.Task[None] | None = None
        self._initialize_result: InitializeResult | None = None
        self._started = False
        self._closed = False
        self._exited = False
        self._disconnected = asyncio.Event()
        self._disconnect_error: CodexTransportError | None = None

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float | None = None,
        settings: CollabSettings | None = None,
    ) -> CodexClient:
        """Create an unstarted client configured for stdio transport."""
        resolved = settings if settings is not None else CollabSettings.from_env()
        transport = StdioTransport(
            list(command) if command is not None else list(resolved.command),
            cwd=cwd,
            env=env,
            connect_timeout=connect_timeout,
            grace_period=resolved.shutdown_grace_period,
            terminate_period=resolved.shutdown_terminate_period,
        )
        return cls(
            transport,
            request_timeout=(
                request_timeout if request_timeout is not None else resolved.request_timeout
            ),
            client_info=_settings_client_info(resolved),
        )

    @classmethod
    def connect_websocket(
        cls,
        url: str,
        *,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float | None = None,
        settings: CollabSettings | None = None,
    ) -> CodexClient:
        """Create an unstarted client configured for websocket transport."""
        resolved = settings if settings is not None else CollabSettings.from_env()
        resolved_headers = dict(headers) if headers is not None else {}
        if token and "Authorization" not in resolved_headers:
            resolved_headers["Authorization"] = f"Bearer {token}"
        transport = WebSocketTransport(
            url,
            headers=resolved_headers,
            connect_timeout=connect_timeout,
        )
        return cls(
            transport,
            request_timeout=(
                request_timeout if request_timeout is not None else resolved.request_timeout
            ),
            client_info=_settings_client_info(resolved),
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exited(self) -> bool:
        """True once the peer went away while the client was still open."""
        return self._exited

    @property
    def user_agent(self) -> str | None:
        if self._initialize_result is None:
            return None
        return self._initialize_result.user_agent

    @property
    def initialize_result(self) -> InitializeResult | None:
        return self._initialize_result

    async def wait_disconnected(self) -> CodexTransportError:
        """Wait until the client is closed or the peer goes away; return the cause."""
        await self._disconnected.wait()
        assert self._disconnect_error is not None
        return self._disconnect_error

    async def start(self) -> CodexClient:
        """Connect transport, start the receive loop, and run the handshake once.

        A failed handshake closes the client before the error propagates.
        """
        if self._closed:
            raise CodexClientClosedError("client closed")
        if self._started:
            return self
        await self._transport.connect()
        self._start_receiver()
        self._started = True
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aenter__(self) -> CodexClient:
        """Support `async with CodexClient(...)` usage."""
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Close client on context-manager exit."""
        await self.close()

    async def close(self) -> None:
        """Fail pending requests, stop handlers, shut the transport down, stop receiving."""
        if self._closed:
            return
        self._closed = True

        closed_error = CodexClientClosedError("client closed")
        self._mark_disconnected(closed_error)
        self._reject_pending(closed_error)

        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        try:
            await self._transport.close()
        finally:
            if self._receiver_task is not None:
                self._receiver_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._receiver_task
                self._receiver_task = None
            self._notification_handlers.clear()
            self._request_handlers.clear()

    async def initialize(self, *, timeout: float | None = None) -> InitializeResult:
        """Send `initialize`, then the `initialized` notification."""
        params = _prepare_initialize_params(self._client_info)
        result = await self.request(INITIALIZE_METHOD, params, timeout=timeout)
        result_dict = dict(result) if isinstance(result, Mapping) else {"value": result}
        user_agent = result_dict.get("userAgent")
        server_info = result_dict.get("serverInfo")
        self._initialize_result = InitializeResult(
            user_agent=user_agent if isinstance(user_agent, str) else None,
            server_info=dict(server_info) if isinstance(server_info, Mapping) else None,
            raw=result_dict,
        )
        await self.notify(INITIALIZED_METHOD)
        logger.debug("app-server initialized: %s", self._initialize_result.user_agent)
        return self._initialize_result

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await its result.

        Raises:
            CodexClientClosedError: If the client is closed, before or while waiting.
            CodexProcessExitedError: If the app-server exited, before or while waiting.
            CodexRPCError: If the server answers with an error response.
            CodexRequestTimeoutError: If no response arrives within the timeout.
        """
        self._ensure_usable()

        request_id = self._next_request_id
        self._next_request_id += 1

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[request_id] = _PendingRequest(method=method, future=future)

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        started = time.monotonic()
        try:
            try:
                await self._send(make_request(request_id, method, params))
            except CodexTransportError as exc:
                self._pending.pop(request_id, None)
                self._reject_pending(exc)
                raise
            try:
                return await asyncio.wait_for(future, timeout=timeout_seconds)
            except asyncio.TimeoutError as exc:
                elapsed = time.monotonic() - started
                raise CodexRequestTimeoutError(
                    f"request {method!r} (id={request_id}) timed out after {elapsed:.1f}s",
                    timeout=timeout_seconds,
                ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification; write failures are logged, never raised."""
        try:
            await self._send(make_notification(method, params))
        except CodexTransportError as exc:
            logger.warning("failed to send notification %s: %s", method, exc)

    async def respond(self, request_id: RequestId, result: Any) -> None:
        """Answer a server-initiated request manually."""
        await self._send(make_result_response(request_id, result))

    def on(self, method: str, handler: NotificationHandler) -> Unsubscribe:
        """Subscribe to a notification method; returns an unsubscribe callable."""
        subscription = _Subscription(handler)
        self._notification_handlers.setdefault(method, []).append(subscription)

        def unsubscribe() -> None:
            subscriptions = self._notification_handlers.get(method)
            if subscriptions is None:
                return
            for index, candidate in enumerate(subscriptions):
                if candidate is subscription:
                    del subscriptions[index]
                    break
            if not subscriptions:
                self._notification_handlers.pop(method, None)

        return unsubscribe

    def on_request(self, method: str, handler: RequestHandler) -> Unsubscribe:
        """Handle a server-initiated request method; the handler's return value is the result."""
        if method in self._request_handlers:
            logger.warning("replacing existing handler for server request %s", method)
        self._request_handlers[method] = handler

        def unsubscribe() -> None:
            if self._request_handlers.get(method) is handler:
                del self._request_handlers[method]

        return unsubscribe

    async def start_thread(
        self,
        config: ThreadConfig | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Create a new thread and return its id."""
        result = await self.request(
            THREAD_START_METHOD,
            _thread_config_to_params(config),
            timeout=timeout,
        )
        thread_id = _extract_thread_id(result)
        if not thread_id:
            raise CodexProtocolError("thread/start response missing thread id")
        return thread_id

    async def resume_thread(
        self,
        thread_id: str,
        config: ThreadConfig | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Resume an existing thread and return its id."""
        params = {"threadId": thread_id, **_thread_config_to_params(config)}
        result = await self.request(THREAD_RESUME_METHOD, params, timeout=timeout)
        return _extract_thread_id(result) or thread_id

    async def interrupt_turn(
        self,
        thread_id: str,
        turn_id: str,
        *,
        timeout: float | None = None,
    ) -> None:
        """Ask the server to stop a running turn."""
        await self.request(
            TURN_INTERRUPT_METHOD,
            {"threadId": thread_id, "turnId": turn_id},
            timeout=timeout,
        )

    def _ensure_usable(self) -> None:
        if self._closed:
            raise CodexClientClosedError("client closed")
        if self._exited:
            returncode = self._transport.returncode
            raise CodexProcessExitedError(
                f"app server exited ({_describe_returncode(returncode)})",
                returncode=returncode,
            )

    async def _send(self, payload: Mapping[str, Any]) -> None:
        async with self._send_lock:
            await self._transport.send(payload)

    def _reject_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(error)

    def _start_receiver(self) -> None:
        """Start background receive loop exactly once."""
        if self._receiver_task is not None:
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())

    async def _receiver_loop(self) -> None:
        """Read lines and dispatch each message in arrival order."""
        while not self._closed:
            try:
                line = await self._transport.recv()
            except CodexTransportError as exc:
                if not self._closed:
                    await self._handle_stream_end(exc)
                return

            message = parse_message(line)
            if message is None:
                continue
            if isinstance(message, Response):
                self._settle_response(message)
            elif isinstance(message, ErrorResponse):
                self._settle_error(message)
            elif isinstance(message, Request):
                self._spawn_background_task(self._handle_server_request(message))
            elif isinstance(message, Notification):
                self._dispatch_notification(message)

    async def _handle_stream_end(self, cause: Exception) -> None:
        self._exited = True
        # stdout usually closes before the process is reaped.
        returncode = await self._transport.wait_exit(EXIT_STATUS_TIMEOUT)
        if self._closed:
            return
        logger.warning(
            "app-server connection ended (%s): %s",
            _describe_returncode(returncode),
            cause,
        )
        exited_error = CodexProcessExitedError(
            f"app server exited unexpectedly ({_describe_returncode(returncode)})",
            returncode=returncode,
        )
        self._mark_disconnected(exited_error)
        self._reject_pending(exited_error)

    def _mark_disconnected(self, error: CodexTransportError) -> None:
        if self._disconnect_error is None:
            self._disconnect_error = error
        self._disconnected.set()

    def _settle_response(self, message: Response) -> None:
        entry = self._pending.pop(message.id, None)
        if entry is None:
            logger.debug("ignoring response for unknown request id %r", message.id)
            return
        if not entry.future.done():
            entry.future.set_result(message.result)

    def _settle_error(self, message: ErrorResponse) -> None:
        entry = self._pending.pop(message.id, None)
        if entry is None:
            logger.debug("ignoring error response for unknown request id %r", message.id)
            return
        if not entry.future.done():
            entry.future.set_exception(
                CodexRPCError(
                    message.error.message,
                    code=message.error.code,
                    data=message.error.data,
                    method=entry.method,
                )
            )

    def _dispatch_notification(self, message: Notification) -> None:
        subscriptions = self._notification_handlers.get(message.method)
        if not subscriptions:
            return
        for subscription in list(subscriptions):
            try:
                subscription.handler(message.params)
            except Exception:
                logger.exception("notification handler for %s failed", message.method)

    async def _handle_server_request(self, message: Request) -> None:
        handler = self._request_handlers.get(message.method)
        if handler is None:
            await self._send_reply(
                make_error_response(
                    message.id,
                    METHOD_NOT_FOUND,
                    f"Method not found: {message.method}",
                )
            )
            return

        try:
            result = handler(message.params)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except CodexProtocolError as exc:
            logger.warning("invalid params for server request %s: %s", message.method, exc)
            await self._send_reply(make_error_response(message.id, INVALID_PARAMS, str(exc)))
            return
        except Exception as exc:
            logger.warning("handler for server request %s failed: %s", message.method, exc)
            await self._send_reply(
                make_error_response(message.id, INTERNAL_ERROR, f"Handler error: {exc}")
            )
            return

        reply = make_result_response(message.id, result)
        try:
            encode_message(reply)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "handler for server request %s returned an unserializable result: %s",
                message.method,
                exc,
            )
            reply = make_error_response(message.id, INTERNAL_ERROR, f"Handler error: {exc}")
        await self._send_reply(reply)

    async def _send_reply(self, payload: Mapping[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._send(payload)
        except CodexTransportError as exc:
            logger.warning("failed to answer server request %r: %s", payload.get("id"), exc)

    def _spawn_background_task(self, coro: Coroutine[Any, Any, Any]) -> None:
        task: asyncio.Task[Any] = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


async def connect(
    *,
    command: Sequence[str] | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    request_timeout: float | None = None,
    settings: CollabSettings | None = None,
) -> CodexClient:
    """Spawn the app-server over stdio and return an initialized client."""
    client = CodexClient.connect_stdio(
        command=command,
        cwd=cwd,
        env=env,
        request_timeout=request_timeout,
        settings=settings,
    )
    return await client.start()


def _describe_returncode(returncode: int | None) -> str:
    if returncode is None:
        return "exit code unknown"
    return f"code {returncode}"


def _settings_client_info(settings: CollabSettings) -> dict[str, Any]:
    return {
        "name": settings.client_name,
        "title": None,
        "version": settings.client_version,
    }


def _thread_config_to_params(config: ThreadConfig | None) -> dict[str, Any]:
    """Encode `ThreadConfig` into protocol params (camelCase), omitting UNSET."""
    if config is None:
        return {}

    mapping: tuple[tuple[str, str], ...] = (
        ("cwd", "cwd"),
        ("model", "model"),
        ("approval_policy", "approvalPolicy"),
        ("sandbox", "sandbox"),
        ("config", "config"),
    )
    params: dict[str, Any] = {}
    for attr_name, key_name in mapping:
        value = getattr(config, attr_name)
        if is_unset(value):
            continue
        params[key_name] = value
    return params


def _prepare_initialize_params(client_info: Mapping[str, Any] | None) -> dict[str, Any]:
    """Build the initialize payload; caller `clientInfo` entries override the defaults."""
    info: dict[str, Any] = {
        "name": CLIENT_NAME,
        "title": None,
        "version": CLIENT_VERSION,
    }
    if client_info is not None:
        info.update(client_info)
    return {
        "clientInfo": info,
        "capabilities": {
            "experimentalApi": False,
            "optOutNotificationMethods": list(DEFAULT_OPT_OUT_NOTIFICATION_METHODS),
        },
    }


def _extract_thread_id(payload: Any) -> str | None:
    """Thread id from a thread/start or thread/resume result."""
    if not isinstance(payload, Mapping):
        return None
    thread = payload.get("thread")
    if isinstance(thread, Mapping) and isinstance(thread.get("id"), str):
        return thread["id"]
    direct = payload.get("threadId")
    return direct if isinstance(direct, str) else None
