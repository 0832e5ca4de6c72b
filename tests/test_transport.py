import asyncio
import logging
import sys
from types import SimpleNamespace
from typing import Any

import pytest

from codex_collab.errors import CodexSpawnError, CodexTransportError
from codex_collab.transport import LineBuffer, StdioTransport, WebSocketTransport
import codex_collab.transport as transport_module

ECHO_SERVER = (
    "import sys\n"
    "sys.stderr.write('warming up\\n')\n"
    "sys.stderr.flush()\n"
    "sys.stdout.write('{\"method\":\"a\"}\\n\\n{\"method\":\"b\"}\\n')\n"
    "sys.stdout.flush()\n"
    "for line in sys.stdin:\n"
    "    sys.stdout.write(line)\n"
    "    sys.stdout.flush()\n"
)


def test_line_buffer_keeps_partial_line_between_chunks() -> None:
    buffer = LineBuffer()
    assert buffer.feed(b'{"method":"a"}\n{"meth') == ['{"method":"a"}']
    assert buffer.pending == '{"meth'
    assert buffer.feed(b'od":"b"}\n') == ['{"method":"b"}']
    assert buffer.pending == ""


def test_line_buffer_decodes_multibyte_character_split_across_chunks() -> None:
    encoded = '{"text":"café"}\n'.encode("utf-8")
    split = encoded.index(b"\xc3") + 1
    buffer = LineBuffer()
    assert buffer.feed(encoded[:split]) == []
    assert buffer.feed(encoded[split:]) == ['{"text":"café"}']


def test_line_buffer_trims_and_skips_blank_lines() -> None:
    buffer = LineBuffer()
    assert buffer.feed(b"  first  \n\n\r\n\tsecond\r\n") == ["first", "second"]


def test_stdio_transport_requires_command() -> None:
    with pytest.raises(ValueError):
        StdioTransport([])


def test_stdio_transport_spawn_failure_mentions_install_hint(tmp_path: Any) -> None:
    async def _run() -> None:
        transport = StdioTransport([str(tmp_path / "missing-codex"), "app-server"])
        with pytest.raises(CodexSpawnError) as exc_info:
            await transport.connect()
        assert "npm install -g @openai/codex" in str(exc_info.value)
        assert isinstance(exc_info.value, CodexTransportError)

    asyncio.run(_run())


def test_stdio_transport_exchanges_lines_and_drains_stderr(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def _run() -> int | None:
        transport = StdioTransport([sys.executable, "-c", ECHO_SERVER])
        await transport.connect()
        try:
            assert await asyncio.wait_for(transport.recv(), 5) == '{"method":"a"}'
            assert await asyncio.wait_for(transport.recv(), 5) == '{"method":"b"}'
            await transport.send({"id": 1, "method": "ping"})
            assert await asyncio.wait_for(transport.recv(), 5) == '{"id":1,"method":"ping"}'
        finally:
            await transport.close()
        return transport.returncode

    with caplog.at_level(logging.WARNING, logger="codex_collab.transport"):
        returncode = asyncio.run(_run())

    assert returncode == 0
    assert any(
        "app-server stderr: warming up" in record.getMessage() for record in caplog.records
    )


def test_stdio_transport_end_of_stream_is_sticky() -> None:
    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", "print('{\"method\":\"only\"}')"])
        await transport.connect()
        try:
            assert await asyncio.wait_for(transport.recv(), 5) == '{"method":"only"}'
            with pytest.raises(CodexTransportError):
                await asyncio.wait_for(transport.recv(), 5)
            with pytest.raises(CodexTransportError):
                await asyncio.wait_for(transport.recv(), 5)
        finally:
            await transport.close()
            await transport.close()

    asyncio.run(_run())


def test_stdio_transport_wait_exit_reaps_exited_process() -> None:
    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", "import sys; sys.exit(4)"])
        assert await transport.wait_exit(0.1) is None
        await transport.connect()
        try:
            with pytest.raises(CodexTransportError):
                await asyncio.wait_for(transport.recv(), 5)
            assert await transport.wait_exit(5.0) == 4
            assert transport.returncode == 4
        finally:
            await transport.close()

    asyncio.run(_run())


def test_stdio_transport_send_requires_connection() -> None:
    async def _run() -> None:
        transport = StdioTransport(["codex", "app-server"])
        with pytest.raises(CodexTransportError):
            await transport.send({"method": "initialized"})

    asyncio.run(_run())


def test_websocket_transport_send_requires_connection() -> None:
    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:9999")
        with pytest.raises(CodexTransportError):
            await transport.send({"id": 1, "method": "ping"})

    asyncio.run(_run())


def test_websocket_transport_connect_uses_additional_headers(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    async def fake_connect(uri: str, **kwargs: object) -> object:
        captured["uri"] = uri
        captured["kwargs"] = kwargs

        class DummySocket:
            async def close(self) -> None:
                return None

        return DummySocket()

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect),
    )

    async def _run() -> None:
        transport = WebSocketTransport(
            "ws://127.0.0.1:8765",
            headers={"Authorization": "Bearer token"},
        )
        await transport.connect()
        await transport.close()

    asyncio.run(_run())
    assert captured["uri"] == "ws://127.0.0.1:8765"
    kwargs = captured["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["additional_headers"] == {"Authorization": "Bearer token"}
    assert kwargs["compression"] is None


def test_websocket_transport_connect_wraps_original_exception(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_connect(uri: str, **kwargs: object) -> object:
        raise RuntimeError("boom")

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect),
    )

    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:8765")
        with pytest.raises(CodexTransportError) as exc_info:
            await transport.connect()
        message = str(exc_info.value)
        assert "RuntimeError" in message
        assert "boom" in message

    asyncio.run(_run())


class ScriptedSocket:
    def __init__(self, frames: list[str | bytes]) -> None:
        self.frames = list(frames)
        self.sent: list[str] = []

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def recv(self) -> str | bytes:
        if not self.frames:
            raise ConnectionError("peer closed")
        return self.frames.pop(0)

    async def close(self) -> None:
        return None


def test_websocket_transport_splits_frames_into_lines(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    socket = ScriptedSocket(
        [
            '{"method":"a"}\n{"method":"b"}',
            b'{"id":1,"result":{}}',
        ]
    )

    async def fake_connect(uri: str, **kwargs: object) -> object:
        return socket

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect),
    )

    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:8765")
        await transport.connect()
        await transport.send({"id": 1, "method": "ping"})
        assert socket.sent == ['{"id":1,"method":"ping"}']

        assert await transport.recv() == '{"method":"a"}'
        assert await transport.recv() == '{"method":"b"}'
        assert await transport.recv() == '{"id":1,"result":{}}'
        with pytest.raises(CodexTransportError):
            await transport.recv()
        with pytest.raises(CodexTransportError):
            await transport.recv()
        await transport.close()

    asyncio.run(_run())
