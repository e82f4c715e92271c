"""Error correlation: stack + component state + recent network in one context.

`correlate()` never raises. Each signal reports its own note, and the overall
confidence reflects how many signals came back non-degraded (a context with no
network evidence is always `low`).
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from .config import WebSeeConfig
from .instrumentation import InstrumentationRegistry, Subscription
from .manifest import BuildManifest
from .network import NetworkActivityTracer, NetworkTrace

logger = logging.getLogger("mcp.websee.correlator")

Confidence = Literal["high", "medium", "low"]

_QUOTED_RE = re.compile(r"'[^']*'|\"[^\"]*\"|`[^`]*`")
_HEX_RE = re.compile(r"\b0x[0-9a-fA-F]+\b")
_NUM_RE = re.compile(r"\b\d+(?:\.\d+)?\b")
_AT_RE = re.compile(r"\bat\s+.*$", re.MULTILINE)
_WS_RE = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    """Replace literal values with placeholders so recurring errors group together."""
    text = _QUOTED_RE.sub("<str>", message or "")
    text = _HEX_RE.sub("<hex>", text)
    text = _NUM_RE.sub("<n>", text)
    text = _AT_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def word_similarity(a: str, b: str) -> float:
    wa = set((a or "").lower().split())
    wb = set((b or "").lower().split())
    union = wa | wb
    return len(wa & wb) / len(union) if union else 0.0


def classify_message(message: str, *, has_components: bool = False, related: int = 0) -> str:
    text = (message or "").lower()
    if any(word in text for word in ("fetch", "network", "ajax", "xhr", "cors")):
        return "network"
    if "is not a function" in text or "undefined" in text or "null" in text:
        return "type"
    if "is not defined" in text or "not found" in text:
        return "reference"
    if has_components and ("render" in text or "component" in text):
        return "component"
    if related > 2:
        return "cascading"
    return "unknown"


_DESCRIPTIONS = {
    "network": "Network request failure. Check connectivity, API endpoints and CORS configuration.",
    "type": "Property or method accessed on an undefined/null value. Check initialization order and data flow.",
    "reference": "Variable or function not in scope. Check imports, declarations and scope.",
    "component": "Component rendering error. Check component props, state and lifecycle.",
    "cascading": "Cascading failure: several related errors followed one root error. Fix the earliest one first.",
    "unknown": "Review the resolved stack trace and surrounding code for more context.",
}


def recommendations_for(
    message: str,
    *,
    has_components: bool,
    module: str | None,
    resolved_frames: int,
) -> list[str]:
    text = (message or "").lower()
    out = ["Review the resolved stack trace to identify the exact location"]
    if "fetch" in text or "network" in text:
        out += [
            "Inspect the related network traces (status, timing, initiator)",
            "Verify API endpoint URLs and request format",
            "Check CORS headers if the request is cross-origin",
            "Add error handling for network failures",
        ]
    if "undefined" in text or "null" in text:
        out += [
            "Add null checks before accessing properties",
            "Use optional chaining (?.) for safer property access",
            "Verify data is loaded before the component renders",
        ]
    if has_components:
        out += ["Inspect component state and props in the error context", "Check that the component is mounted"]
    if module:
        out.append(f"Review module '{module}' in your bundle")
    if resolved_frames == 0:
        out.append("Enable source maps in your build configuration for better debugging")
    return out


def confidence_for(stack_ok: bool, components_ok: bool, network_ok: bool) -> Confidence:
    """3 signals -> high; 2 including network -> medium; otherwise low."""
    if not network_ok:
        return "low"
    count = int(stack_ok) + int(components_ok) + int(network_ok)
    if count == 3:
        return "high"
    if count == 2:
        return "medium"
    return "low"


@dataclass(slots=True)
class PageError:
    message: str
    name: str = "Error"
    stack: str | None = None
    timestamp: float | None = None
    type: str = "error"
    filename: str | None = None
    lineno: int | None = None
    colno: int | None = None

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> PageError:
        ts = event.get("timestamp")

        def as_int(value: Any) -> int | None:
            return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None

        return cls(
            message=str(event.get("message") or ""),
            name=str(event.get("name") or "Error"),
            stack=event.get("stack") if isinstance(event.get("stack"), str) else None,
            timestamp=float(ts) if isinstance(ts, (int, float)) else None,
            type=str(event.get("type") or "error"),
            filename=event.get("filename") if isinstance(event.get("filename"), str) else None,
            lineno=as_int(event.get("lineno")),
            colno=as_int(event.get("colno")),
        )

    @classmethod
    def coerce(cls, value: Any) -> PageError:
        if isinstance(value, PageError):
            return value
        if isinstance(value, dict):
            return cls.from_event(value)
        if isinstance(value, BaseException):
            return cls(message=str(value), name=type(value).__name__)
        return cls(message=str(value or ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "name": self.name,
            "type": self.type,
            "stack": self.stack,
            "timestamp": self.timestamp,
            "filename": self.filename,
            "lineno": self.lineno,
            "colno": self.colno,
        }


class ErrorLog:
    """Bounded history of page errors (oldest dropped first)."""

    def __init__(self, max_errors: int = 200) -> None:
        self._errors: deque[PageError] = deque(maxlen=max(1, int(max_errors)))
        self._sub: Subscription | None = None

    def attach(self, registry: InstrumentationRegistry) -> None:
        if self._sub is None:
            self._sub = registry.subscribe("error", self._on_event)

    def detach(self) -> None:
        if self._sub is not None:
            self._sub.close()
            self._sub = None

    def _on_event(self, event: dict[str, Any]) -> None:
        self.record(PageError.from_event(event))

    def record(self, error: PageError) -> None:
        self._errors.append(error)

    def recent(self, limit: int | None = None) -> list[PageError]:
        items = list(self._errors)
        return items[-limit:] if limit else items

    def clear(self) -> None:
        self._errors.clear()

    def __len__(self) -> int:
        return len(self._errors)

    def __iter__(self) -> Iterator[PageError]:
        return iter(list(self._errors))


@dataclass(slots=True)
class ErrorContext:
    error: PageError
    stack: dict[str, Any]
    components: list[dict[str, Any]]
    network: list[NetworkTrace]
    confidence: Confidence
    notes: dict[str, str] = field(default_factory=dict)
    category: str = "unknown"
    recommendations: list[str] = field(default_factory=list)
    module: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error.to_dict(),
            "stack": self.stack,
            "components": self.components,
            "network": [t.to_dict() for t in self.network],
            "confidence": self.confidence,
            "notes": dict(self.notes),
            "category": self.category,
            "recommendations": list(self.recommendations),
            "module": self.module,
        }


class ErrorCorrelator:
    def __init__(
        self,
        resolver: Any,
        components: Any,
        network: NetworkActivityTracer,
        errors: ErrorLog | None = None,
        *,
        manifest: BuildManifest | None = None,
        config: WebSeeConfig | None = None,
    ) -> None:
        self.resolver = resolver
        self.components = components
        self.network = network
        self.config = config or WebSeeConfig.from_env()
        self.errors = errors if errors is not None else ErrorLog(self.config.max_errors)
        self.manifest = manifest

    async def _stack_signal(self, err: PageError, notes: dict[str, str]) -> tuple[dict[str, Any], bool]:
        empty: dict[str, Any] = {"frames": [], "lines": [], "resolved": 0, "unresolved": 0}
        if not err.stack:
            notes["stack"] = "error carries no stack"
            return empty, False
        try:
            stack = await self.resolver.trace_stack(err.stack)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Stack resolution failed: %s", exc)
            notes["stack"] = f"stack resolution failed: {exc}"
            return empty, False
        total = stack["resolved"] + stack["unresolved"]
        notes["stack"] = f"{stack['resolved']}/{total} frames resolved"
        return stack, stack["resolved"] > 0

    async def _component_signal(self, selector: str | None, notes: dict[str, str]) -> tuple[list[dict[str, Any]], bool]:
        if self.components is None:
            notes["components"] = "component tracking unavailable"
            return [], False
        try:
            if selector:
                at = await self.components.component_at(selector)
                if not at.found:
                    notes["components"] = at.message or "no component at selector"
                    return [], False
                detail = await self.components.get_instance(at.node_id)
                if not detail.found:
                    notes["components"] = detail.message or "component vanished"
                    return [], False
                notes["components"] = f"state of {detail.value.name} at {selector}"
                return [detail.value.to_dict()], True
            arena = await self.components.build_tree()
            nodes = [n.to_dict() for n in arena.walk()]
            if not nodes:
                notes["components"] = arena.message or "no components detected"
                return [], False
            notes["components"] = f"{len(nodes)} components in tree snapshot"
            if arena.truncated:
                notes["components"] += " (truncated)"
            return nodes, True
        except Exception as exc:  # noqa: BLE001
            logger.debug("Component snapshot failed: %s", exc)
            notes["components"] = f"component snapshot failed: {exc}"
            return [], False

    def _network_signal(self, err: PageError, window_ms: float, notes: dict[str, str]) -> tuple[list[NetworkTrace], bool]:
        before = err.timestamp if err.timestamp else time.time() * 1000
        related = self.network.recent(window_ms, before=before)
        # Failures first, then closest to the error.
        related.sort(key=lambda t: (not (t.status == "failed" or (t.http_status or 0) >= 400), before - t.timestamp))
        if not related:
            notes["network"] = f"no requests in the {int(window_ms)} ms before the error"
            return [], False
        clean = [t for t in related if not t.degraded]
        notes["network"] = f"{len(related)} requests in window ({len(related) - len(clean)} ambiguous matches)"
        return related, bool(clean)

    async def correlate(self, error: Any, window_ms: float | None = None, selector: str | None = None) -> ErrorContext:
        err = PageError.coerce(error)
        window = float(self.config.correlation_window_ms if window_ms is None else window_ms)
        notes: dict[str, str] = {}

        stack, stack_ok = await self._stack_signal(err, notes)
        components, components_ok = await self._component_signal(selector, notes)
        try:
            network, network_ok = self._network_signal(err, window, notes)
        except Exception as exc:  # noqa: BLE001
            notes["network"] = f"network lookup failed: {exc}"
            network, network_ok = [], False

        module = None
        top = next((f for f in stack["frames"] if f.get("resolved")), None)
        if top is not None and self.manifest is not None:
            found = self.manifest.find_module(top["location"]["file"])
            module = found.to_dict() if found else None

        return ErrorContext(
            error=err,
            stack=stack,
            components=components,
            network=network,
            confidence=confidence_for(stack_ok, components_ok, network_ok),
            notes=notes,
            category=classify_message(err.message, has_components=components_ok),
            recommendations=recommendations_for(
                err.message,
                has_components=components_ok,
                module=module["name"] if module else None,
                resolved_frames=stack["resolved"],
            ),
            module=module,
        )

    def recurring(self, min_count: int = 2) -> list[dict[str, Any]]:
        """Normalized error classes seen at least `min_count` times, most frequent first."""
        groups: dict[str, list[PageError]] = {}
        for e in self.errors:
            groups.setdefault(normalize_message(e.message), []).append(e)
        out = [
            {
                "pattern": pattern,
                "count": len(items),
                "lastSeen": max((e.timestamp or 0) for e in items),
                "example": items[-1].message,
            }
            for pattern, items in groups.items()
            if len(items) >= min_count
        ]
        out.sort(key=lambda g: (g["count"], g["lastSeen"]), reverse=True)
        return out

    def find_similar(self, message: str, threshold: float = 0.5) -> list[dict[str, Any]]:
        pattern = normalize_message(message)
        groups: dict[str, list[PageError]] = {}
        for e in self.errors:
            groups.setdefault(normalize_message(e.message), []).append(e)
        out = []
        for key, items in groups.items():
            similarity = 1.0 if key == pattern else word_similarity(pattern, key)
            if similarity < threshold:
                continue
            out.append(
                {
                    "pattern": key,
                    "similarity": round(similarity, 3),
                    "count": len(items),
                    "lastSeen": max((e.timestamp or 0) for e in items),
                    "example": items[-1].message,
                }
            )
        out.sort(key=lambda g: (g["similarity"], g["count"], g["lastSeen"]), reverse=True)
        return out

    def find_root_cause(self, error: Any, window_ms: float | None = None) -> dict[str, Any]:
        """Rank candidate causes by recency and temporal link to failed requests."""
        err = PageError.coerce(error)
        window = float(self.config.correlation_window_ms if window_ms is None else window_ms)
        at = err.timestamp if err.timestamp else time.time() * 1000
        pattern = normalize_message(err.message)

        history = [e for e in self.errors if e is not err]
        occurrences = [e for e in history if normalize_message(e.message) == pattern]
        related = [
            e
            for e in history
            if normalize_message(e.message) != pattern and word_similarity(err.message, e.message) > 0.3
        ]

        candidates: list[dict[str, Any]] = []
        for trace in self.network.failed():
            settled = trace.end_timestamp if trace.end_timestamp is not None else trace.timestamp
            gap = at - settled
            if 0 <= gap <= window:
                candidates.append(
                    {
                        "kind": "network",
                        "score": round(1.0 + (1 - gap / window if window else 1.0), 3),
                        "gapMs": gap,
                        "trace": trace.to_dict(),
                    }
                )
        for e in history:
            if e.timestamp is None or normalize_message(e.message) == pattern:
                continue
            gap = at - e.timestamp
            if 0 < gap <= window:
                candidates.append(
                    {
                        "kind": "error",
                        "score": round(1 - gap / window if window else 0.5, 3),
                        "gapMs": gap,
                        "error": e.to_dict(),
                    }
                )
        candidates.sort(key=lambda c: (c["score"], -c["gapMs"]), reverse=True)

        category = classify_message(err.message, related=len(related))
        if candidates and candidates[0]["kind"] == "network" and category == "unknown":
            category = "network"
        return {
            "error": err.to_dict(),
            "pattern": pattern,
            "occurrences": len(occurrences) + 1,
            "category": category,
            "description": f"{err.message}. {_DESCRIPTIONS[category]}",
            "candidates": candidates[:10],
            "relatedErrors": [e.to_dict() for e in related[:10]],
            "recommendations": recommendations_for(
                err.message, has_components=False, module=None, resolved_frames=1
            ),
        }


__all__ = [
    "ErrorContext",
    "ErrorCorrelator",
    "ErrorLog",
    "PageError",
    "classify_message",
    "confidence_for",
    "normalize_message",
    "word_similarity",
]
