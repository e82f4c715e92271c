from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest


class FakeWs:
    """Websocket stand-in: answers each sent command via `reply(msg)`."""

    def __init__(self, reply: Any = None) -> None:
        self.reply = reply
        self.sent: list[dict[str, Any]] = []
        self.conn: Any = None
        self.closed = False

    async def send(self, raw: str) -> None:
        msg = json.loads(raw)
        self.sent.append(msg)
        if self.reply is not None:
            response = self.reply(msg)
            if response is not None:
                asyncio.get_running_loop().call_soon(self.conn.dispatch, response)

    async def close(self) -> None:
        self.closed = True


def _conn(reply: Any = None, *, timeout: float = 1.0):
    from mcp_servers.websee.cdp import CdpConnection

    ws = FakeWs(reply)
    conn = CdpConnection(ws, timeout=timeout)
    ws.conn = conn
    return conn, ws


def test_send_resolves_by_message_id() -> None:
    conn, ws = _conn(lambda msg: {"id": msg["id"], "result": {"echo": msg["method"]}})

    async def main():
        return await asyncio.gather(conn.send("Runtime.enable"), conn.send("Page.enable", {"x": 1}))

    first, second = asyncio.run(main())
    assert first == {"echo": "Runtime.enable"}
    assert second == {"echo": "Page.enable"}
    assert [m["id"] for m in ws.sent] == [1, 2]
    assert "params" not in ws.sent[0]
    assert ws.sent[1]["params"] == {"x": 1}


def test_protocol_error_becomes_cdp_error() -> None:
    from mcp_servers.websee.errors import CdpError

    conn, _ = _conn(lambda msg: {"id": msg["id"], "error": {"code": -32000, "message": "No node with given id"}})
    with pytest.raises(CdpError, match="No node with given id"):
        asyncio.run(conn.send("DOM.describeNode"))


def test_missing_response_times_out() -> None:
    from mcp_servers.websee.errors import CdpError

    conn, _ = _conn(None)
    with pytest.raises(CdpError, match="timed out"):
        asyncio.run(conn.send("Runtime.evaluate", timeout=0.01))
    assert conn._pending == {}


def test_event_listeners_are_isolated_and_removable() -> None:
    conn, _ = _conn()
    seen: list[dict[str, Any]] = []

    def broken(_params: dict[str, Any]) -> None:
        raise RuntimeError("listener bug")

    conn.on("Page.frameNavigated", broken)
    remove = conn.on("Page.frameNavigated", seen.append)
    conn.dispatch({"method": "Page.frameNavigated", "params": {"frame": {"id": "main"}}})
    remove()
    conn.dispatch({"method": "Page.frameNavigated", "params": {"frame": {"id": "again"}}})

    assert seen == [{"frame": {"id": "main"}}]


def test_closed_connection_rejects_commands() -> None:
    from mcp_servers.websee.errors import CdpError

    conn, ws = _conn()

    async def main() -> None:
        await conn.close()
        await conn.send("Runtime.enable")

    with pytest.raises(CdpError, match="closed"):
        asyncio.run(main())
    assert ws.closed is True


class DummyConn:
    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, Any]] = []

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        if method == "Runtime.evaluate":
            if self.error is not None:
                raise self.error
            return self.result
        return {}


def test_eval_js_returns_value_and_enables_runtime_once() -> None:
    from mcp_servers.websee.cdp import PageSession

    conn = DummyConn({"result": {"type": "number", "value": 123}})
    page = PageSession(conn)

    async def main():
        return await page.eval_js("1 + 2"), await page.eval_js("1 + 2")

    assert asyncio.run(main()) == (123, 123)
    assert [m for m, _ in conn.calls].count("Runtime.enable") == 1
    params = conn.calls[1][1]
    assert params["returnByValue"] is True
    assert params["awaitPromise"] is True


def test_eval_js_maps_undefined_and_null_to_none() -> None:
    from mcp_servers.websee.cdp import PageSession

    assert asyncio.run(PageSession(DummyConn({"result": {"type": "undefined"}})).eval_js("void 0")) is None
    assert asyncio.run(PageSession(DummyConn({"result": {"type": "object", "subtype": "null"}})).eval_js("null")) is None


def test_eval_js_navigation_is_transient() -> None:
    from mcp_servers.websee.cdp import PageSession
    from mcp_servers.websee.errors import CdpError, NavigationInterrupted

    page = PageSession(DummyConn(error=CdpError("Execution context was destroyed.")))
    with pytest.raises(NavigationInterrupted) as excinfo:
        asyncio.run(page.eval_js("document.title"))
    assert excinfo.value.kind == "transient"


def test_eval_js_page_exception_is_cdp_error() -> None:
    from mcp_servers.websee.cdp import PageSession
    from mcp_servers.websee.errors import CdpError

    conn = DummyConn(
        {
            "result": {"type": "object"},
            "exceptionDetails": {"text": "Uncaught", "exception": {"description": "ReferenceError: nope is not defined"}},
        }
    )
    with pytest.raises(CdpError, match="ReferenceError"):
        asyncio.run(PageSession(conn).eval_js("nope"))


def test_pick_page_target_prefers_url_hint() -> None:
    from mcp_servers.websee.cdp import _pick_page_target
    from mcp_servers.websee.errors import CdpError

    targets = [
        {"type": "service_worker", "webSocketDebuggerUrl": "ws://sw"},
        {"type": "page", "url": "https://a.test/", "webSocketDebuggerUrl": "ws://a"},
        {"type": "page", "url": "https://app.test/dashboard", "webSocketDebuggerUrl": "ws://b"},
        {"type": "page", "url": "https://detached.test/"},
    ]
    assert _pick_page_target(targets)["webSocketDebuggerUrl"] == "ws://a"
    assert _pick_page_target(targets, "app.test")["webSocketDebuggerUrl"] == "ws://b"
    with pytest.raises(CdpError):
        _pick_page_target([{"type": "page"}])
