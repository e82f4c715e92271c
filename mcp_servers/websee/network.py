"""Network activity tracing with call-site provenance.

The page reports `network:*` events; each request gets a trace carrying the
stack captured synchronously at the `fetch`/`XMLHttpRequest` call. Delivery may
be out of order or duplicated: starts merge by key, completions apply once,
and completions seen before their start are parked until it arrives.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Literal

from .config import WebSeeConfig
from .instrumentation import InstrumentationRegistry, Subscription
from .redaction import clamp, redact_headers, redact_url
from .resolver import parse_stack_frame

logger = logging.getLogger("mcp.websee.network")

TraceStatus = Literal["pending", "completed", "failed"]

MAX_PARKED = 200


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Wildcard (`*`, `?`) -> unanchored regex; compiled once per pattern."""
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


def _num(value: Any) -> float | None:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


@dataclass(slots=True)
class NetworkTrace:
    id: str
    url: str
    method: str
    timestamp: float
    type: str = "fetch"
    rid: str | None = None
    stack: tuple[str, ...] = ()
    initiator: dict[str, Any] | None = None
    status: TraceStatus = "pending"
    end_timestamp: float | None = None
    duration_ms: float | None = None
    http_status: int | None = None
    error: str | None = None
    request_headers: dict[str, Any] = field(default_factory=dict)
    response_headers: dict[str, Any] = field(default_factory=dict)
    request_body: str | None = None
    response_body: str | None = None
    timing: dict[str, Any] | None = None
    degraded: bool = False
    note: str | None = None

    @property
    def key(self) -> tuple[str, str, float]:
        return self.method, self.url, self.timestamp

    def complete(self, *, http_status: int | None, end_ts: float | None, duration_ms: float | None, headers: Any) -> bool:
        """pending -> completed; False when the trace already settled."""
        if self.status != "pending":
            return False
        self.status = "completed"
        self.http_status = http_status
        self.end_timestamp = end_ts
        if duration_ms is None and end_ts is not None:
            duration_ms = max(0.0, end_ts - self.timestamp)
        self.duration_ms = duration_ms
        self.response_headers = redact_headers(headers)
        return True

    def fail(self, *, error: str | None, end_ts: float | None) -> bool:
        """pending -> failed; False when the trace already settled."""
        if self.status != "pending":
            return False
        self.status = "failed"
        self.error = error or "Request failed"
        self.end_timestamp = end_ts
        if end_ts is not None:
            self.duration_ms = max(0.0, end_ts - self.timestamp)
        return True

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "method": self.method,
            "type": self.type,
            "timestamp": self.timestamp,
            "status": self.status,
            "httpStatus": self.http_status,
            "endTimestamp": self.end_timestamp,
            "durationMs": self.duration_ms,
            "initiator": self.initiator,
            "stack": list(self.stack),
            "requestHeaders": self.request_headers,
            "responseHeaders": self.response_headers,
        }
        if self.request_body is not None:
            out["requestBody"] = self.request_body
        if self.response_body is not None:
            out["responseBody"] = self.response_body
        if self.error:
            out["error"] = self.error
        if self.degraded:
            out["degraded"] = True
            out["note"] = self.note
        return out


class NetworkActivityTracer:
    def __init__(self, config: WebSeeConfig | None = None, *, max_traces: int | None = None) -> None:
        self.config = config or WebSeeConfig.from_env()
        self.max_traces = max(1, int(max_traces or self.config.max_traces))
        self._traces: OrderedDict[str, NetworkTrace] = OrderedDict()
        self._by_rid: dict[str, str] = {}
        self._by_key: dict[tuple[str, str, float], str] = {}
        self._parked: list[tuple[str, dict[str, Any]]] = []
        self._subs: list[Subscription] = []
        self._seq = 0

    # ── wiring ────────────────────────────────────────────────────────────

    def attach(self, registry: InstrumentationRegistry) -> None:
        if self._subs:
            return
        self._subs = [
            registry.subscribe("network:start", self.on_start),
            registry.subscribe("network:complete", self.on_complete),
            registry.subscribe("network:error", self.on_error),
            registry.subscribe("network:body", self.on_body),
        ]

    def detach(self) -> None:
        for sub in self._subs:
            sub.close()
        self._subs = []

    # ── intake ────────────────────────────────────────────────────────────

    def on_start(self, event: dict[str, Any]) -> NetworkTrace | None:
        url = event.get("url")
        if not isinstance(url, str) or not url:
            logger.debug("Dropped network:start without url")
            return None
        url = redact_url(url)
        method = str(event.get("method") or "GET").upper()
        ts = _num(event.get("timestamp")) or 0.0
        rid = event.get("rid") if isinstance(event.get("rid"), str) else None
        stack = tuple(str(s) for s in event.get("stack") or [] if isinstance(s, str))

        trace = self._existing(rid, (method, url, ts))
        if trace is not None:
            if stack and not trace.stack:
                trace.stack = stack
                trace.initiator = self._initiator(stack)
            if rid and not trace.rid:
                trace.rid = rid
                self._by_rid[rid] = trace.id
                self._reconcile(trace)
            return trace

        self._seq += 1
        trace = NetworkTrace(
            id=rid or f"t{self._seq}",
            url=url,
            method=method,
            timestamp=ts,
            type=str(event.get("type") or "fetch"),
            rid=rid,
            stack=stack,
            initiator=self._initiator(stack),
            request_headers=redact_headers(event.get("headers")),
            request_body=clamp(event.get("body")),
        )
        self._insert(trace)
        self._reconcile(trace)
        return trace

    def _existing(self, rid: str | None, key: tuple[str, str, float]) -> NetworkTrace | None:
        if rid:
            tid = self._by_rid.get(rid)
            if tid is not None:
                return self._traces.get(tid)
        tid = self._by_key.get(key)
        trace = self._traces.get(tid) if tid else None
        # Two requests with distinct rids are distinct even within one millisecond.
        if trace is not None and rid and trace.rid and trace.rid != rid:
            return None
        return trace

    @staticmethod
    def _initiator(stack: tuple[str, ...]) -> dict[str, Any] | None:
        for line in stack:
            frame = parse_stack_frame(line)
            if frame is not None:
                return frame
        return None

    def _insert(self, trace: NetworkTrace) -> None:
        self._traces[trace.id] = trace
        if trace.rid:
            self._by_rid[trace.rid] = trace.id
        self._by_key[trace.key] = trace.id
        while len(self._traces) > self.max_traces:
            _, old = self._traces.popitem(last=False)
            if old.rid:
                self._by_rid.pop(old.rid, None)
            if self._by_key.get(old.key) == old.id:
                del self._by_key[old.key]

    def _reconcile(self, trace: NetworkTrace) -> None:
        if not self._parked:
            return
        still: list[tuple[str, dict[str, Any]]] = []
        for kind, event in self._parked:
            rid = event.get("rid")
            if rid and trace.rid:
                same = rid == trace.rid
            else:
                method = str(event.get("method") or "GET").upper()
                same = method == trace.method and redact_url(str(event.get("url") or "")) == trace.url
            if same and (trace.status == "pending" or kind == "network:body"):
                self._apply(kind, trace, event)
            else:
                still.append((kind, event))
        self._parked = still

    def _park(self, kind: str, event: dict[str, Any]) -> None:
        self._parked.append((kind, event))
        if len(self._parked) > MAX_PARKED:
            self._parked = self._parked[-MAX_PARKED:]

    def _apply(self, kind: str, trace: NetworkTrace, event: dict[str, Any]) -> bool:
        end_ts = _num(event.get("endTs"))
        if kind == "network:complete":
            status = event.get("status")
            return trace.complete(
                http_status=int(status) if isinstance(status, (int, float)) else None,
                end_ts=end_ts,
                duration_ms=_num(event.get("durationMs")),
                headers=event.get("headers"),
            )
        if kind == "network:error":
            return trace.fail(error=str(event.get("error") or "") or None, end_ts=end_ts)
        if kind == "network:body":
            body = event.get("body")
            if isinstance(body, str):
                trace.response_body = clamp(body)
            if isinstance(event.get("timing"), dict):
                trace.timing = event["timing"]
            return True
        return False

    def _match(self, event: dict[str, Any], *, settled_ok: bool = False) -> NetworkTrace | None:
        rid = event.get("rid")
        if isinstance(rid, str) and rid:
            tid = self._by_rid.get(rid)
            return self._traces.get(tid) if tid else None

        method = str(event.get("method") or "GET").upper()
        url = redact_url(str(event.get("url") or ""))
        candidates = [
            t
            for t in self._traces.values()
            if t.method == method and t.url == url and (settled_ok or t.status == "pending")
        ]
        if not candidates:
            return None

        dispatch = _num(event.get("timestamp"))
        if dispatch is None:
            end_ts = _num(event.get("endTs"))
            duration = _num(event.get("durationMs"))
            if end_ts is not None and duration is not None:
                dispatch = end_ts - duration
        if dispatch is not None:
            best = min(candidates, key=lambda t: (abs(t.timestamp - dispatch), -t.timestamp))
        else:
            best = max(candidates, key=lambda t: t.timestamp)

        if len(candidates) > 1 and not settled_ok:
            best.degraded = True
            best.note = (
                f"Matched by method/url/time proximity among {len(candidates)} concurrent "
                f"{method} requests to the same url; the pairing may be wrong"
            )
            logger.warning("Ambiguous completion for %s %s (%d candidates)", method, url, len(candidates))
        return best

    def _settle(self, kind: str, event: dict[str, Any]) -> None:
        trace = self._match(event)
        if trace is None:
            rid = event.get("rid")
            if isinstance(rid, str) and rid:
                self._park(kind, event)
                return
            if self._match(event, settled_ok=True) is not None:
                logger.debug("Ignored duplicate %s for %s", kind, event.get("url"))
                return
            self._park(kind, event)
            return
        if not self._apply(kind, trace, event):
            logger.debug("Ignored duplicate %s for trace %s", kind, trace.id)

    def on_complete(self, event: dict[str, Any]) -> None:
        self._settle("network:complete", event)

    def on_error(self, event: dict[str, Any]) -> None:
        self._settle("network:error", event)

    def on_body(self, event: dict[str, Any]) -> None:
        trace = self._match(event, settled_ok=True)
        if trace is None:
            self._park("network:body", event)
            return
        self._apply("network:body", trace, event)

    # ── queries ───────────────────────────────────────────────────────────

    def get(self, trace_id: str) -> NetworkTrace | None:
        return self._traces.get(trace_id)

    def all(self) -> list[NetworkTrace]:
        return list(self._traces.values())

    def get_by_pattern(self, pattern: str | None = None) -> list[NetworkTrace]:
        if not pattern or pattern == "*":
            return self.all()
        rx = compile_pattern(pattern)
        return [t for t in self._traces.values() if rx.search(t.url)]

    def get_timing(self, trace_id: str) -> dict[str, Any] | None:
        trace = self._traces.get(trace_id)
        if trace is None:
            return None
        out: dict[str, Any] = {"id": trace.id, "total": trace.duration_ms, "phases": None}
        t = trace.timing or {}

        def span(start: str, end: str) -> float | None:
            a, b = _num(t.get(start)), _num(t.get(end))
            if a is None or b is None or a <= 0 or b < a:
                return None
            return round(b - a, 3)

        # Zeroed fields mean the server sent no Timing-Allow-Origin.
        if _num(t.get("responseStart")):
            secure = _num(t.get("secureConnectionStart")) or 0
            out["phases"] = {
                "lookup": span("domainLookupStart", "domainLookupEnd"),
                "connect": span("connectStart", "secureConnectionStart" if secure else "connectEnd"),
                "handshake": span("secureConnectionStart", "connectEnd") if secure else None,
                "firstByte": span("requestStart", "responseStart"),
                "transfer": span("responseStart", "responseEnd"),
            }
            if out["total"] is None:
                out["total"] = _num(t.get("duration"))
        return out

    def recent(self, window_ms: float, *, before: float | None = None) -> list[NetworkTrace]:
        """Traces dispatched within `window_ms` before `before` (default: newest trace)."""
        if not self._traces:
            return []
        end = before if before is not None else max(t.timestamp for t in self._traces.values())
        start = end - max(0.0, window_ms)
        return [t for t in self._traces.values() if start <= t.timestamp <= end]

    def failed(self) -> list[NetworkTrace]:
        return [
            t for t in self._traces.values() if t.status == "failed" or (t.http_status is not None and t.http_status >= 400)
        ]

    def summary(self) -> dict[str, Any]:
        by_method: dict[str, int] = {}
        by_status: dict[str, int] = {}
        durations: list[float] = []
        for t in self._traces.values():
            by_method[t.method] = by_method.get(t.method, 0) + 1
            label = str(t.http_status) if t.http_status is not None else t.status
            by_status[label] = by_status.get(label, 0) + 1
            if t.duration_ms is not None:
                durations.append(t.duration_ms)
        return {
            "total": len(self._traces),
            "pending": sum(1 for t in self._traces.values() if t.status == "pending"),
            "failed": len(self.failed()),
            "byMethod": by_method,
            "byStatus": by_status,
            "averageDurationMs": round(sum(durations) / len(durations), 3) if durations else None,
            "parked": len(self._parked),
        }

    def clear(self) -> None:
        self._traces.clear()
        self._by_rid.clear()
        self._by_key.clear()
        self._parked.clear()


__all__ = ["NetworkActivityTracer", "NetworkTrace", "compile_pattern"]
