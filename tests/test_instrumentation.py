from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest


class FakePage:
    """Minimal page surface: records CDP commands and answers payload evaluations."""

    def __init__(
        self,
        *,
        install_result: Any = None,
        markers: list[bool] | None = None,
        fail_method: str | None = None,
        navigate_once: bool = False,
    ) -> None:
        self.sent: list[tuple[str, Any]] = []
        self.evals: list[str] = []
        self.listeners: dict[str, list[Any]] = {}
        self.install_result = install_result if install_result is not None else {"ok": True, "already": False}
        self.markers = list(markers or [])
        self.fail_method = fail_method
        self.navigate_once = navigate_once

    async def enable_runtime(self) -> None:
        self.sent.append(("Runtime.enable", None))

    async def enable_page(self) -> None:
        self.sent.append(("Page.enable", None))

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        from mcp_servers.websee.errors import CdpError

        self.sent.append((method, params))
        await asyncio.sleep(0)
        if method == self.fail_method:
            raise CdpError("Target closed")
        if method == "Page.addScriptToEvaluateOnNewDocument":
            return {"identifier": "7"}
        return {}

    def on(self, method: str, listener: Any):
        self.listeners.setdefault(method, []).append(listener)
        return lambda: self.listeners[method].remove(listener)

    def emit(self, method: str, params: dict[str, Any]) -> None:
        for listener in list(self.listeners.get(method, ())):
            listener(params)

    async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        from mcp_servers.websee.errors import NavigationInterrupted
        from mcp_servers.websee.page_script import INSTRUMENTATION_SCRIPT_SOURCE, MARKER_CHECK_EXPRESSION

        self.evals.append(expression)
        await asyncio.sleep(0)
        if expression == INSTRUMENTATION_SCRIPT_SOURCE:
            if self.navigate_once:
                self.navigate_once = False
                raise NavigationInterrupted(tool="page", action="evaluate", reason="Execution context was destroyed")
            return self.install_result
        if expression == MARKER_CHECK_EXPRESSION:
            return self.markers.pop(0) if self.markers else True
        return None

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.sent if m == method)


def _registry(page: FakePage, **cfg: Any):
    from mcp_servers.websee.config import WebSeeConfig
    from mcp_servers.websee.instrumentation import InstrumentationRegistry

    return InstrumentationRegistry(page, WebSeeConfig(**cfg))


def test_install_is_idempotent_under_concurrency() -> None:
    from mcp_servers.websee.page_script import BINDING_NAME, INSTRUMENTATION_SCRIPT_SOURCE

    page = FakePage()
    registry = _registry(page)

    async def main() -> list[dict[str, Any]]:
        results = await asyncio.gather(registry.install(), registry.install(), registry.install())
        results.append(await registry.install())
        return results

    results = asyncio.run(main())
    assert page.count("Page.addScriptToEvaluateOnNewDocument") == 1
    assert page.evals.count(INSTRUMENTATION_SCRIPT_SOURCE) == 1
    assert ("Runtime.addBinding", {"name": BINDING_NAME}) in page.sent
    assert [r["cached"] for r in results] == [False, True, True, True]
    assert results[0]["scriptId"] == "7"
    assert registry.installed is True


def test_missing_marker_reinjects_without_second_new_document_script() -> None:
    from mcp_servers.websee.page_script import INSTRUMENTATION_SCRIPT_SOURCE

    # install -> marker ok; second install -> marker gone -> re-evaluate -> marker ok
    page = FakePage(markers=[True, False, True])
    registry = _registry(page)

    async def main() -> dict[str, Any]:
        await registry.install()
        return await registry.install()

    second = asyncio.run(main())
    assert second["cached"] is False
    assert page.evals.count(INSTRUMENTATION_SCRIPT_SOURCE) == 2
    assert page.count("Page.addScriptToEvaluateOnNewDocument") == 1


def test_install_disabled_by_config() -> None:
    page = FakePage()
    registry = _registry(page, instrumentation=False)
    assert asyncio.run(registry.install()) == {"enabled": False}
    assert page.sent == []
    assert registry.installed is False


def test_incompatible_payload_is_fatal() -> None:
    from mcp_servers.websee.errors import InstrumentationError

    page = FakePage(install_result={"ok": False, "conflict": True, "version": "2"})
    registry = _registry(page)
    with pytest.raises(InstrumentationError) as excinfo:
        asyncio.run(registry.install())
    assert excinfo.value.kind == "fatal"
    assert "version 2" in excinfo.value.reason
    assert registry.installed is False


def test_cdp_failure_during_install_is_fatal() -> None:
    from mcp_servers.websee.errors import CdpError, InstrumentationError

    page = FakePage(fail_method="Runtime.addBinding")
    registry = _registry(page)
    with pytest.raises(InstrumentationError) as excinfo:
        asyncio.run(registry.install())
    assert isinstance(excinfo.value.__cause__, CdpError)
    assert excinfo.value.to_dict()["kind"] == "fatal"


def test_marker_missing_after_install_is_fatal() -> None:
    from mcp_servers.websee.errors import InstrumentationError

    page = FakePage(markers=[False])
    with pytest.raises(InstrumentationError):
        asyncio.run(_registry(page).install())


def test_navigation_mid_install_is_retried() -> None:
    page = FakePage(navigate_once=True)
    registry = _registry(page)
    result = asyncio.run(registry.install())
    assert result["enabled"] is True
    assert registry.installed is True


def test_binding_events_fan_out_to_subscribers() -> None:
    from mcp_servers.websee.page_script import BINDING_NAME

    page = FakePage()
    registry = _registry(page)
    asyncio.run(registry.install())

    errors: list[dict[str, Any]] = []
    renders: list[dict[str, Any]] = []
    registry.subscribe("error", errors.append)
    registry.subscribe("render", renders.append)

    page.emit(
        "Runtime.bindingCalled",
        {"name": BINDING_NAME, "payload": json.dumps({"kind": "error", "message": "boom"})},
    )
    page.emit("Runtime.bindingCalled", {"name": BINDING_NAME, "payload": "{not json"})
    page.emit("Runtime.bindingCalled", {"name": BINDING_NAME, "payload": json.dumps({"kind": "weird"})})
    page.emit("Runtime.bindingCalled", {"name": "someoneElse", "payload": json.dumps({"kind": "error"})})

    assert errors == [{"kind": "error", "message": "boom"}]
    assert renders == []
    assert registry.dropped == 2


def test_top_frame_navigation_is_published() -> None:
    page = FakePage()
    registry = _registry(page)
    asyncio.run(registry.install())

    seen: list[dict[str, Any]] = []
    registry.subscribe("navigation", seen.append)
    page.emit("Page.frameNavigated", {"frame": {"id": "child", "parentId": "main", "url": "https://ads.test/"}})
    page.emit("Page.frameNavigated", {"frame": {"id": "main", "url": "https://app.test/next"}})

    assert len(seen) == 1
    assert seen[0]["url"] == "https://app.test/next"


def test_subscriptions_release_and_isolate_failures() -> None:
    from mcp_servers.websee.instrumentation import InstrumentationRegistry

    registry = InstrumentationRegistry(FakePage())
    got: list[dict[str, Any]] = []

    def broken(_event: dict[str, Any]) -> None:
        raise RuntimeError("subscriber bug")

    registry.subscribe("render", broken)
    with registry.subscribe("render", got.append) as sub:
        registry.publish("render", {"kind": "render", "n": 1})
        assert sub.active
    assert not sub.active
    registry.publish("render", {"kind": "render", "n": 2})

    assert got == [{"kind": "render", "n": 1}]
    assert registry.subscriber_count("render") == 1

    with pytest.raises(ValueError):
        registry.subscribe("nope", got.append)


def test_close_unwires_page_listeners() -> None:
    page = FakePage()
    registry = _registry(page)
    asyncio.run(registry.install())
    registry.subscribe("error", lambda _e: None)
    assert page.listeners["Runtime.bindingCalled"]

    registry.close()
    assert page.listeners["Runtime.bindingCalled"] == []
    assert page.listeners["Page.frameNavigated"] == []
    assert registry.subscriber_count("error") == 0


def test_call_page_missing_payload_raises_navigation_interrupted() -> None:
    from mcp_servers.websee.errors import NavigationInterrupted
    from mcp_servers.websee.instrumentation import call_page

    class GonePage:
        async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
            assert "globalThis.__websee" in expression
            return {"__missing": True}

    with pytest.raises(NavigationInterrupted) as excinfo:
        asyncio.run(call_page(GonePage(), "tree", {"framework": "react"}, tool="components"))
    assert excinfo.value.kind == "transient"
    assert excinfo.value.tool == "components"


def test_fetch_body_capture_is_bounded() -> None:
    from mcp_servers.websee.page_script import INSTRUMENTATION_SCRIPT_SOURCE as src

    # Response previews go through a bounded reader; SSE streams are never read.
    assert ".clone().text()" not in src.replace("\n", "").replace(" ", "")
    assert "readPreview(resp)" in src
    assert "reader.cancel()" in src
    assert "!isStreaming(ctype)" in src
