from __future__ import annotations

import asyncio
import json
import re
from typing import Any

_CALL_RE = re.compile(r"return w\.([\w.]+)\((.*)\);\}\)\(\)$")

REACT_CAPS = {"globalHook": {"react": True}, "internalInstance": {"react": True}, "devtools": {}, "versions": {}}

TODO_TREE = [
    {"id": "react:n1:0", "name": "App", "framework": "react", "parentId": None, "domRef": "n1"},
    {"id": "react:n2:0", "name": "TodoList", "framework": "react", "parentId": "react:n1:0", "domRef": "n2"},
    {"id": "react:n3:0", "name": "TodoItem", "framework": "react", "parentId": "react:n2:0", "domRef": "n3"},
    {"id": "react:n4:0", "name": "TodoItem", "framework": "react", "parentId": "react:n2:0", "domRef": "n4"},
]


class FakePage:
    """Answers `globalThis.__websee.<path>(...)` calls from python handlers."""

    def __init__(self, handlers: dict[str, Any]) -> None:
        self.handlers = handlers
        self.calls: list[tuple[str, list[Any]]] = []

    async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        m = _CALL_RE.search(expression)
        assert m, expression
        path, args = m.group(1), json.loads("[" + m.group(2) + "]")
        self.calls.append((path, args))
        handler = self.handlers.get(path)
        return handler(*args) if handler else None

    def paths(self) -> list[str]:
        return [p for p, _ in self.calls]


def _tracker(handlers: dict[str, Any]):
    from mcp_servers.websee.components import ComponentStateTracker
    from mcp_servers.websee.config import WebSeeConfig
    from mcp_servers.websee.instrumentation import InstrumentationRegistry

    page = FakePage(handlers)
    config = WebSeeConfig()
    registry = InstrumentationRegistry(page, config)
    return ComponentStateTracker(page, registry, config), page, registry


def _tree_handler(opts: dict[str, Any]) -> dict[str, Any]:
    if opts.get("selector") == "#missing":
        return {"found": False, "message": "No element matches #missing"}
    return {"found": True, "nodes": [dict(n) for n in TODO_TREE], "truncated": False}


def test_tree_is_stable_across_builds() -> None:
    tracker, page, _ = _tracker({"capabilities": lambda: REACT_CAPS, "tree": _tree_handler})

    async def main():
        return await tracker.build_tree(), await tracker.build_tree()

    first, second = asyncio.run(main())
    assert first.shape() == second.shape()
    assert first.frameworks == frozenset({"react"})
    assert first.roots == ["react:n1:0"]
    assert [n.name for n in first.walk()] == ["App", "TodoList", "TodoItem", "TodoItem"]
    assert [n.depth for n in first.walk()] == [0, 1, 2, 2]
    assert [c.id for c in first.children("react:n2:0")] == ["react:n3:0", "react:n4:0"]

    tree_args = [args for path, args in page.calls if path == "tree"]
    assert tree_args[0][0]["framework"] == "react"
    assert tree_args[0][0]["maxDepth"] == 64
    assert tree_args[0][0]["maxNodes"] == 2000


def test_selector_without_component_is_not_found() -> None:
    tracker, _, _ = _tracker({"capabilities": lambda: REACT_CAPS, "tree": _tree_handler})
    arena = asyncio.run(tracker.build_tree("#missing"))
    assert arena.found is False
    assert len(arena) == 0
    assert arena.message == "No element matches #missing"
    assert arena.to_dict()["found"] is False


def test_page_without_framework_reports_message() -> None:
    tracker, page, _ = _tracker({"capabilities": lambda: {"globalHook": {}, "internalInstance": {}}})
    arena = asyncio.run(tracker.build_tree())
    assert arena.frameworks == frozenset({"unknown"})
    assert len(arena) == 0
    assert arena.message == "No supported framework runtime detected on this page"
    assert "tree" not in page.paths()


def test_arena_never_forms_cycles() -> None:
    from mcp_servers.websee.components import ComponentArena

    arena = ComponentArena()
    kept = arena.add_page_nodes(
        [
            {"id": "a", "name": "A", "parentId": "b"},
            {"id": "b", "name": "B", "parentId": "a"},
            {"id": "a", "name": "Dup", "parentId": None},
            "garbage",
            {"name": "NoId"},
        ]
    )
    assert kept == 2
    assert arena.roots == ["a"]
    assert arena.get("b").parent_id == "a"
    assert arena.get("a").parent_id is None
    assert [n.id for n in arena.walk()] == ["a", "b"]


def test_hooks_are_classified_by_shape() -> None:
    from mcp_servers.websee.frameworks import EffectHook, StateHook, UnknownHook

    hooks = [
        {"index": 0, "hasQueue": True, "hasSetter": True, "value": 3},
        {"index": 1, "effect": True, "deps": [1, "a"]},
        {"index": 2, "memo": True, "value": 9, "deps": []},
        {"index": 3, "ref": True, "value": {"current": None}},
    ]

    def instance(node_id: str, opts: dict[str, Any]) -> dict[str, Any]:
        return {"found": True, "framework": "react", "name": "Counter", "hooks": hooks}

    tracker, _, _ = _tracker({"instance": instance})
    snap = asyncio.run(tracker.get_hooks("react:n5:0"))
    assert snap.found is True
    kinds = [type(h) for h in snap.value]
    assert kinds == [StateHook, EffectHook, EffectHook, UnknownHook]
    assert snap.value[1].to_dict()["deps"] == [1, "a"]
    assert snap.value[2].to_dict()["flavor"] == "memo"
    assert snap.value[3].to_dict()["hint"] == "ref"
    assert snap.message is None


def test_instance_snapshot_and_not_found() -> None:
    def instance(node_id: str, opts: dict[str, Any]) -> dict[str, Any]:
        if node_id != "react:n3:0":
            return {"found": False, "message": f"Component {node_id} is no longer mounted"}
        return {
            "found": True,
            "framework": "react",
            "name": "TodoItem",
            "props": {"title": "write tests", "done": False} if opts["props"] else None,
            "state": None,
            "hooks": [{"index": 0, "hasQueue": True, "hasSetter": True, "value": False}],
            "contexts": [{"name": "ThemeContext", "value": "dark"}],
            "source": {"fileName": "src/TodoItem.tsx", "lineNumber": 12},
        }

    tracker, page, _ = _tracker({"instance": instance})

    async def main():
        return (
            await tracker.get_instance("react:n3:0"),
            await tracker.get_props("react:n3:0"),
            await tracker.get_props("react:n9:0"),
            await tracker.get_source("react:n3:0"),
        )

    detail, props, missing, source = asyncio.run(main())
    assert detail.value.name == "TodoItem"
    assert detail.value.props == {"title": "write tests", "done": False}
    assert detail.value.contexts == ({"name": "ThemeContext", "value": "dark"},)
    assert detail.to_dict()["value"]["hooks"][0]["kind"] == "state"
    assert props.value == {"title": "write tests", "done": False}
    assert page.calls[1][1][1] == {"props": True, "state": False, "hooks": False, "context": False}
    assert missing.found is False
    assert missing.message == "Component react:n9:0 is no longer mounted"
    assert source.value["fileName"] == "src/TodoItem.tsx"


def test_component_at_and_find_by_name() -> None:
    def locate(selector: str) -> dict[str, Any]:
        if selector == ".todo":
            return {"found": True, "id": "react:n3:0", "name": "TodoItem", "framework": "react"}
        return {"found": False}

    tracker, _, _ = _tracker({"capabilities": lambda: REACT_CAPS, "tree": _tree_handler, "locate": locate})

    async def main():
        return (
            await tracker.component_at(".todo"),
            await tracker.component_at("#nothing"),
            await tracker.find_by_name("todo"),
            await tracker.find_by_name("TodoItem", exact=True),
        )

    hit, miss, fuzzy, exact = asyncio.run(main())
    assert hit.found and hit.node_id == "react:n3:0"
    assert miss.found is False and "#nothing" in miss.message
    assert len(fuzzy) == 3
    assert [n.id for n in exact] == ["react:n3:0", "react:n4:0"]


def _render_handlers(registry_ref: list[Any], stamps: tuple[float, ...], *, navigate: bool = False) -> dict[str, Any]:
    def start(node_id: str, token: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        registry = registry_ref[0]
        loop.call_soon(registry.publish, "render", {"kind": "render", "token": "someone-else", "timestamp": 1.0})
        for i, ts in enumerate(stamps):
            loop.call_later(
                0.01 * (i + 1),
                registry.publish,
                "render",
                {"kind": "render", "token": token, "id": node_id, "timestamp": ts, "reason": "props"},
            )
        if navigate:
            loop.call_later(0.05, registry.publish, "navigation", {"kind": "navigation", "url": "https://app.test/2"})
        return {"found": True, "signal": "commit"}

    return {"renders.start": start, "renders.stop": lambda token: {"stopped": True}}


def test_track_renders_counts_window() -> None:
    ref: list[Any] = []
    tracker, page, registry = _tracker(_render_handlers(ref, (1000.0, 1016.0, 1032.0)))
    ref.append(registry)

    report = asyncio.run(tracker.track_renders("react:n3:0", 300))
    assert report.found is True
    assert report.total_renders == 3
    assert report.average_interval_ms == 16.0
    assert report.stopped_by == "timeout"
    assert report.signal == "commit"
    assert report.events[0].reason == "props"
    token = page.calls[0][1][1]
    assert ("renders.stop", [token]) in page.calls
    assert registry.subscriber_count("render") == 0
    assert registry.subscriber_count("navigation") == 0


def test_track_renders_stops_at_max_renders() -> None:
    ref: list[Any] = []
    tracker, page, registry = _tracker(_render_handlers(ref, (10.0, 20.0, 30.0, 40.0)))
    ref.append(registry)

    report = asyncio.run(tracker.track_renders("react:n3:0", 5000, max_renders=2))
    assert report.total_renders == 2
    assert report.stopped_by == "max_renders"
    assert "renders.stop" in page.paths()


def test_track_renders_ends_on_navigation_without_page_stop() -> None:
    ref: list[Any] = []
    tracker, page, registry = _tracker(_render_handlers(ref, (10.0,), navigate=True))
    ref.append(registry)

    report = asyncio.run(tracker.track_renders("react:n3:0", 5000))
    assert report.stopped_by == "navigation"
    assert report.total_renders == 1
    assert "renders.stop" not in page.paths()
    assert registry.subscriber_count("render") == 0


def test_track_renders_unknown_component() -> None:
    tracker, _, registry = _tracker({"renders.start": lambda node_id, token: {"found": False, "message": "gone"}})
    report = asyncio.run(tracker.track_renders("react:n9:0", 100))
    assert report.found is False
    assert report.message == "gone"
    assert report.total_renders == 0
    assert report.average_interval_ms is None
    assert registry.subscriber_count("render") == 0
