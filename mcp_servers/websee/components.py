"""Live component inspection (React / Vue / Angular).

The page walks framework internals and returns flat, JSON-safe node lists;
this module keeps them in an arena keyed by DOM-derived ids and turns page
snapshots into typed results. Nothing here writes to the page except the
scoped render subscriptions, which are always released.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from .config import WebSeeConfig
from .errors import CdpError, NavigationInterrupted
from .frameworks import Capabilities, Hook, classify_hook, detect_frameworks
from .instrumentation import InstrumentationRegistry, call_page

logger = logging.getLogger("mcp.websee.components")


@dataclass(frozen=True, slots=True)
class ComponentNode:
    id: str
    name: str
    framework: str
    depth: int
    parent_id: str | None
    child_ids: tuple[str, ...] = ()
    dom_ref: str | None = None
    source: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "framework": self.framework,
            "depth": self.depth,
            "parentId": self.parent_id,
            "childIds": list(self.child_ids),
            "domRef": self.dom_ref,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class ComponentInstance:
    id: str
    name: str
    framework: str
    props: Any = None
    state: Any = None
    hooks: tuple[Hook, ...] = ()
    contexts: tuple[dict[str, Any], ...] = ()
    source: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "framework": self.framework,
            "props": self.props,
            "state": self.state,
            "hooks": [h.to_dict() for h in self.hooks],
            "contexts": list(self.contexts),
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Point-in-time read; `found=False` carries a message instead of a value."""

    found: bool
    node_id: str | None = None
    value: Any = None
    message: str | None = None
    framework: str | None = None
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, tuple):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        out: dict[str, Any] = {"found": self.found, "nodeId": self.node_id, "value": value}
        if self.framework:
            out["framework"] = self.framework
        if self.message:
            out["message"] = self.message
        if self.degraded:
            out["degraded"] = True
        return out


@dataclass(frozen=True, slots=True)
class RenderEvent:
    component_id: str
    timestamp: float
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"componentId": self.component_id, "timestamp": self.timestamp, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class RenderReport:
    component_id: str
    window_ms: int
    found: bool = True
    events: tuple[RenderEvent, ...] = ()
    signal: str | None = None
    stopped_by: str = "timeout"
    message: str | None = None

    @property
    def total_renders(self) -> int:
        return len(self.events)

    @property
    def average_interval_ms(self) -> float | None:
        stamps = sorted(e.timestamp for e in self.events)
        if len(stamps) < 2:
            return None
        return (stamps[-1] - stamps[0]) / (len(stamps) - 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "componentId": self.component_id,
            "found": self.found,
            "windowMs": self.window_ms,
            "totalRenders": self.total_renders,
            "averageIntervalMs": self.average_interval_ms,
            "signal": self.signal,
            "stoppedBy": self.stopped_by,
            "events": [e.to_dict() for e in self.events],
            "message": self.message,
        }


class ComponentArena:
    """Id-indexed node storage; the parent/child graph is always a forest."""

    def __init__(self) -> None:
        self._nodes: dict[str, ComponentNode] = {}
        self._children: dict[str, list[str]] = {}
        self.roots: list[str] = []
        self.frameworks: frozenset[str] = frozenset()
        self.found = True
        self.message: str | None = None
        self.truncated = False
        self.degraded = False

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str) -> ComponentNode | None:
        return self._nodes.get(node_id)

    def add_page_nodes(self, raw_nodes: Any) -> int:
        """Insert nodes in page (breadth-first) order; returns how many were kept.

        A node whose parent is unknown becomes a root, so every kept edge points
        to an already-inserted node and no cycle can form.
        """
        added = 0
        for raw in raw_nodes if isinstance(raw_nodes, list) else []:
            if not isinstance(raw, dict):
                continue
            node_id = raw.get("id")
            if not isinstance(node_id, str) or node_id in self._nodes:
                continue
            parent_id = raw.get("parentId")
            if parent_id not in self._nodes:
                parent_id = None
            depth = self._nodes[parent_id].depth + 1 if parent_id else 0
            source = raw.get("source") if isinstance(raw.get("source"), dict) else None
            self._nodes[node_id] = ComponentNode(
                id=node_id,
                name=str(raw.get("name") or "Anonymous"),
                framework=str(raw.get("framework") or "unknown"),
                depth=depth,
                parent_id=parent_id,
                dom_ref=raw.get("domRef") if isinstance(raw.get("domRef"), str) else None,
                source=source,
            )
            self._children[node_id] = []
            if parent_id:
                self._children[parent_id].append(node_id)
            else:
                self.roots.append(node_id)
            added += 1
        return added

    def nodes(self) -> list[ComponentNode]:
        """Nodes with child ids filled in (frozen copies)."""
        return [self._with_children(n) for n in self._nodes.values()]

    def _with_children(self, node: ComponentNode) -> ComponentNode:
        kids = tuple(self._children.get(node.id, ()))
        if kids == node.child_ids:
            return node
        return ComponentNode(
            node.id, node.name, node.framework, node.depth, node.parent_id, kids, node.dom_ref, node.source
        )

    def children(self, node_id: str) -> list[ComponentNode]:
        return [self._with_children(self._nodes[c]) for c in self._children.get(node_id, ())]

    def walk(self) -> Iterator[ComponentNode]:
        """Pre-order traversal (iterative)."""
        stack = list(reversed(self.roots))
        while stack:
            node_id = stack.pop()
            yield self._with_children(self._nodes[node_id])
            stack.extend(reversed(self._children.get(node_id, ())))

    def shape(self) -> list[tuple[str, str | None, str]]:
        """(id, parent id, name) triples in walk order; equal shapes mean isomorphic trees."""
        return [(n.id, n.parent_id, n.name) for n in self.walk()]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "found": self.found,
            "frameworks": sorted(self.frameworks),
            "roots": list(self.roots),
            "count": len(self._nodes),
            "truncated": self.truncated,
            "degraded": self.degraded,
            "nodes": [n.to_dict() for n in self.walk()],
        }
        if self.message:
            out["message"] = self.message
        return out


def _framework_of(node_id: str) -> str:
    return node_id.split(":", 1)[0] if ":" in node_id else "unknown"


class ComponentStateTracker:
    def __init__(self, session: Any, registry: InstrumentationRegistry, config: WebSeeConfig | None = None) -> None:
        self.session = session
        self.registry = registry
        self.config = config or WebSeeConfig.from_env()
        self.capabilities = Capabilities()
        self.frameworks: frozenset[str] = frozenset()

    async def _call(self, path: str, *args: Any) -> Any:
        return await call_page(self.session, path, *args, tool="components")

    async def detect(self) -> frozenset[str]:
        self.capabilities = Capabilities.from_page(await self._call("capabilities"))
        self.frameworks = detect_frameworks(self.capabilities)
        logger.debug("Detected frameworks: %s", sorted(self.frameworks))
        return self.frameworks

    async def build_tree(self, root_selector: str | None = None) -> ComponentArena:
        frameworks = await self.detect()
        arena = ComponentArena()
        arena.frameworks = frameworks
        messages: list[str] = []
        any_found = False
        for fw in sorted(frameworks):
            if fw == "unknown":
                continue
            res = await self._call(
                "tree",
                {
                    "framework": fw,
                    "selector": root_selector,
                    "maxDepth": self.config.tree_max_depth,
                    "maxNodes": self.config.tree_max_nodes,
                },
            )
            if not isinstance(res, dict):
                continue
            if res.get("found") is False:
                if res.get("message"):
                    messages.append(str(res["message"]))
                continue
            any_found = True
            arena.add_page_nodes(res.get("nodes"))
            arena.truncated = arena.truncated or bool(res.get("truncated"))

        if root_selector and not any_found:
            arena.found = False
            arena.message = messages[0] if messages else f"No component found at selector {root_selector}"
        elif frameworks == frozenset({"unknown"}):
            arena.message = "No supported framework runtime detected on this page"
        return arena

    async def _instance(self, node_id: str, **parts: bool) -> dict[str, Any]:
        opts = {"props": False, "state": False, "hooks": False, "context": False}
        opts.update(parts)
        res = await self._call("instance", node_id, opts)
        return res if isinstance(res, dict) else {"found": False, "message": "Unexpected page response"}

    @staticmethod
    def _missing(node_id: str, res: dict[str, Any]) -> Snapshot:
        return Snapshot(False, node_id, message=str(res.get("message") or f"Component {node_id} not found"))

    async def get_props(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id, props=True)
        if not res.get("found"):
            return self._missing(node_id, res)
        return Snapshot(True, node_id, res.get("props") or {}, framework=res.get("framework"))

    async def get_state(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id, state=True)
        if not res.get("found"):
            return self._missing(node_id, res)
        return Snapshot(True, node_id, res.get("state"), framework=res.get("framework"))

    async def get_hooks(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id, hooks=True)
        if not res.get("found"):
            return self._missing(node_id, res)
        raw = res.get("hooks") if isinstance(res.get("hooks"), list) else []
        hooks = tuple(classify_hook(h, i) for i, h in enumerate(raw) if isinstance(h, dict))
        note = None
        if res.get("framework") != "react":
            note = f"{res.get('framework')} components expose no hook list"
        return Snapshot(True, node_id, hooks, message=note, framework=res.get("framework"))

    async def get_context(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id, context=True)
        if not res.get("found"):
            return self._missing(node_id, res)
        contexts = res.get("contexts") if isinstance(res.get("contexts"), list) else []
        return Snapshot(True, node_id, tuple(contexts), framework=res.get("framework"))

    async def get_source(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id)
        if not res.get("found"):
            return self._missing(node_id, res)
        source = res.get("source") if isinstance(res.get("source"), dict) else None
        message = None if source else "Framework debug source is unavailable (production build?)"
        return Snapshot(True, node_id, source, message=message, framework=res.get("framework"))

    async def get_instance(self, node_id: str) -> Snapshot:
        res = await self._instance(node_id, props=True, state=True, hooks=True, context=True)
        if not res.get("found"):
            return self._missing(node_id, res)
        hooks = tuple(classify_hook(h, i) for i, h in enumerate(res.get("hooks") or []) if isinstance(h, dict))
        instance = ComponentInstance(
            id=node_id,
            name=str(res.get("name") or "Anonymous"),
            framework=str(res.get("framework") or _framework_of(node_id)),
            props=res.get("props"),
            state=res.get("state"),
            hooks=hooks,
            contexts=tuple(c for c in res.get("contexts") or [] if isinstance(c, dict)),
            source=res.get("source") if isinstance(res.get("source"), dict) else None,
        )
        return Snapshot(True, node_id, instance, framework=instance.framework)

    async def component_at(self, selector: str) -> Snapshot:
        res = await self._call("locate", selector)
        if not isinstance(res, dict) or not res.get("found"):
            message = res.get("message") if isinstance(res, dict) else None
            return Snapshot(False, None, message=str(message or f"No component at selector {selector}"))
        node_id = str(res.get("id"))
        return Snapshot(True, node_id, {"id": node_id, "name": res.get("name")}, framework=res.get("framework"))

    async def find_by_name(self, name: str, *, exact: bool = False) -> list[ComponentNode]:
        arena = await self.build_tree()
        needle = name if exact else name.lower()
        if exact:
            return [n for n in arena.walk() if n.name == needle]
        return [n for n in arena.walk() if needle in n.name.lower()]

    async def track_renders(self, node_id: str, window_ms: int, max_renders: int | None = None) -> RenderReport:
        """Count renders of one component for a window.

        The page subscription is released on timeout, on reaching `max_renders`,
        on navigation and on cancellation.
        """
        token = uuid.uuid4().hex
        events: list[RenderEvent] = []
        done = asyncio.Event()
        stopped = {"by": "timeout"}

        def on_render(event: dict[str, Any]) -> None:
            if event.get("token") != token or done.is_set():
                return
            ts = event.get("timestamp")
            events.append(
                RenderEvent(
                    node_id,
                    float(ts) if isinstance(ts, (int, float)) else 0.0,
                    event.get("reason") if isinstance(event.get("reason"), str) else None,
                )
            )
            if max_renders is not None and len(events) >= max_renders:
                stopped["by"] = "max_renders"
                done.set()

        def on_navigation(_event: dict[str, Any]) -> None:
            stopped["by"] = "navigation"
            done.set()

        signal = None
        with self.registry.subscribe("render", on_render), self.registry.subscribe("navigation", on_navigation):
            try:
                started = await self._call("renders.start", node_id, token)
                if not isinstance(started, dict) or not started.get("found"):
                    message = started.get("message") if isinstance(started, dict) else None
                    return RenderReport(node_id, window_ms, found=False, message=str(message or "Component not found"))
                signal = started.get("signal")
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(done.wait(), timeout=max(0, window_ms) / 1000)
            finally:
                if stopped["by"] != "navigation":
                    with suppress(CdpError, NavigationInterrupted):
                        await self._call("renders.stop", token)

        return RenderReport(node_id, window_ms, True, tuple(events), signal, stopped["by"])


__all__ = [
    "ComponentArena",
    "ComponentInstance",
    "ComponentNode",
    "ComponentStateTracker",
    "RenderEvent",
    "RenderReport",
    "Snapshot",
]
