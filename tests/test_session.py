from __future__ import annotations

import asyncio
import json
import re
from typing import Any

_CALL_RE = re.compile(r"return w\.([\w.]+)\((.*)\);\}\)\(\)$")


class FakePage:
    def __init__(self, handlers: dict[str, Any], *, install_result: Any = None) -> None:
        self.handlers = handlers
        self.install_result = install_result if install_result is not None else {"ok": True}
        self.calls: list[str] = []
        self.listeners: dict[str, list[Any]] = {}
        self.closed = False

    async def enable_runtime(self) -> None:
        return None

    async def enable_page(self) -> None:
        return None

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        return {"identifier": "1"} if method == "Page.addScriptToEvaluateOnNewDocument" else {}

    def on(self, method: str, listener: Any):
        self.listeners.setdefault(method, []).append(listener)
        return lambda: self.listeners[method].remove(listener)

    async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        from mcp_servers.websee.page_script import INSTRUMENTATION_SCRIPT_SOURCE, MARKER_CHECK_EXPRESSION

        if expression == INSTRUMENTATION_SCRIPT_SOURCE:
            return self.install_result
        if expression == MARKER_CHECK_EXPRESSION:
            return True
        m = _CALL_RE.search(expression)
        assert m, expression
        path = m.group(1)
        self.calls.append(path)
        handler = self.handlers.get(path)
        return handler(*json.loads("[" + m.group(2) + "]")) if handler else None

    async def close(self) -> None:
        self.closed = True


def _session(page: FakePage):
    from mcp_servers.websee.config import WebSeeConfig
    from mcp_servers.websee.session import IntrospectionSession

    return IntrospectionSession(page, WebSeeConfig())


def _missing_then(value: Any, misses: int):
    state = {"left": misses}

    def handler(*_args: Any) -> Any:
        if state["left"] > 0:
            state["left"] -= 1
            return {"__missing": True}
        return value

    return handler


def test_query_retried_once_after_navigation() -> None:
    instance = {"found": True, "framework": "react", "name": "App", "props": {"a": 1}}
    page = FakePage({"instance": _missing_then(instance, 1)})
    session = _session(page)

    snap = asyncio.run(session.get_component_detail("react:n1:0"))
    assert snap.found is True
    assert snap.degraded is False
    assert snap.value.props == {"a": 1}
    assert page.calls.count("instance") == 2


def test_second_navigation_degrades_instead_of_raising() -> None:
    page = FakePage({"instance": _missing_then({"found": True}, 5)})
    session = _session(page)

    snap = asyncio.run(session.get_component_detail("react:n1:0"))
    assert snap.found is False
    assert snap.degraded is True
    assert "navigated" in (snap.message or "")
    assert page.calls.count("instance") == 2


def test_tree_and_renders_degrade_on_repeated_navigation() -> None:
    page = FakePage({"capabilities": _missing_then({}, 9), "renders.start": _missing_then({}, 9)})
    session = _session(page)

    async def main():
        return await session.get_component_tree(), await session.track_renders("react:n1:0", 50)

    arena, report = asyncio.run(main())
    assert arena.degraded is True
    assert arena.to_dict()["degraded"] is True
    assert report.found is False
    assert report.stopped_by == "navigation"


def test_network_traces_flow_from_page_events() -> None:
    from mcp_servers.websee.page_script import BINDING_NAME

    page = FakePage({})
    session = _session(page)

    async def main():
        await session.ensure_installed()
        for listener in page.listeners["Runtime.bindingCalled"]:
            listener(
                {
                    "name": BINDING_NAME,
                    "payload": json.dumps(
                        {"kind": "network:start", "url": "https://api.test/users?id=1", "method": "GET", "timestamp": 5, "rid": "a"}
                    ),
                }
            )
        return await session.get_network_traces("*/users*")

    traces = asyncio.run(main())
    assert [t.id for t in traces] == ["a"]


def test_correlate_error_survives_install_failure() -> None:
    page = FakePage({}, install_result={"ok": False, "conflict": True, "version": "1"})
    session = _session(page)

    ctx = asyncio.run(session.correlate_error({"message": "boom", "timestamp": 100.0}))
    assert ctx.confidence == "low"
    assert ctx.error.message == "boom"


def test_close_releases_everything() -> None:
    page = FakePage({})
    session = _session(page)
    asyncio.run(session.ensure_installed())
    asyncio.run(session.close())

    assert page.closed is True
    assert page.listeners["Runtime.bindingCalled"] == []
    assert session.registry.subscriber_count("navigation") == 0
    assert session.registry.subscriber_count("network:start") == 0
