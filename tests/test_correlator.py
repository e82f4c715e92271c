from __future__ import annotations

import asyncio
from typing import Any

STACK = "TypeError: Cannot read properties of undefined (reading 'map')\n    at load (http://localhost:3000/main.js:1:200)"


class FakeResolver:
    def __init__(self, *, resolved: bool = True, fail: bool = False) -> None:
        self.resolved = resolved
        self.fail = fail

    async def trace_stack(self, stack: str) -> dict[str, Any]:
        if self.fail:
            raise RuntimeError("resolver offline")
        frame = {
            "function": "load",
            "resolved": self.resolved,
            "location": {"file": "src/App.tsx" if self.resolved else "http://localhost:3000/main.js", "line": 10},
        }
        return {"frames": [frame], "resolved": int(self.resolved), "unresolved": int(not self.resolved)}


class FakeComponents:
    def __init__(self, *, fail: bool = False, empty: bool = False) -> None:
        self.fail = fail
        self.empty = empty

    async def build_tree(self, selector: str | None = None):
        from mcp_servers.websee.components import ComponentArena

        if self.fail:
            raise RuntimeError("page went away")
        arena = ComponentArena()
        if not self.empty:
            arena.add_page_nodes([{"id": "react:n1:0", "name": "App", "framework": "react"}])
        return arena

    async def component_at(self, selector: str):
        from mcp_servers.websee.components import Snapshot

        if selector != "#app":
            return Snapshot(False, None, message=f"No component at selector {selector}")
        return Snapshot(True, "react:n1:0", {"id": "react:n1:0", "name": "App"})

    async def get_instance(self, node_id: str):
        from mcp_servers.websee.components import ComponentInstance, Snapshot

        return Snapshot(True, node_id, ComponentInstance(node_id, "App", "react", props={"user": None}))


def _correlator(resolver: Any = None, components: Any = None, *, manifest: Any = None):
    from mcp_servers.websee.config import WebSeeConfig
    from mcp_servers.websee.correlator import ErrorCorrelator, ErrorLog
    from mcp_servers.websee.network import NetworkActivityTracer

    config = WebSeeConfig()
    network = NetworkActivityTracer(config)
    return ErrorCorrelator(
        resolver or FakeResolver(),
        components if components is not None else FakeComponents(),
        network,
        ErrorLog(50),
        manifest=manifest,
        config=config,
    )


def _failed_request(correlator: Any, *, ts: float = 9000.0, status: int = 500, rid: str = "r1") -> None:
    correlator.network.on_start({"url": "https://api.test/users", "method": "GET", "timestamp": ts, "rid": rid})
    correlator.network.on_complete({"rid": rid, "url": "https://api.test/users", "status": status, "endTs": ts + 500})


def test_no_network_evidence_is_low_confidence() -> None:
    correlator = _correlator()
    ctx = asyncio.run(correlator.correlate({"message": "boom", "stack": STACK, "timestamp": 10000.0}))
    assert ctx.confidence == "low"
    assert ctx.network == []
    assert "no requests" in ctx.notes["network"]
    assert ctx.stack["resolved"] == 1


def test_correlate_never_raises_when_signals_fail() -> None:
    correlator = _correlator(FakeResolver(fail=True), FakeComponents(fail=True))
    ctx = asyncio.run(correlator.correlate({"message": "Request failed", "stack": STACK, "timestamp": 10000.0}))
    assert ctx.confidence == "low"
    assert ctx.components == []
    assert "resolver offline" in ctx.notes["stack"]
    assert "page went away" in ctx.notes["components"]
    assert ctx.to_dict()["error"]["message"] == "Request failed"


def test_all_three_signals_give_high_confidence() -> None:
    correlator = _correlator()
    _failed_request(correlator)
    ctx = asyncio.run(correlator.correlate({"message": "Cannot read properties of undefined", "stack": STACK, "timestamp": 10000.0}))
    assert ctx.confidence == "high"
    assert [t.id for t in ctx.network] == ["r1"]
    assert ctx.components[0]["name"] == "App"
    assert ctx.category == "type"


def test_two_signals_with_network_give_medium() -> None:
    correlator = _correlator()
    _failed_request(correlator)
    ctx = asyncio.run(correlator.correlate({"message": "x is broken", "timestamp": 10000.0}))
    assert ctx.notes["stack"] == "error carries no stack"
    assert ctx.confidence == "medium"


def test_ambiguous_network_matches_do_not_count() -> None:
    correlator = _correlator()
    url = "https://api.test/users"
    correlator.network.on_start({"url": url, "method": "GET", "timestamp": 9000.0})
    correlator.network.on_start({"url": url, "method": "GET", "timestamp": 9100.0})
    correlator.network.on_complete({"url": url, "method": "GET", "timestamp": 9000.0, "status": 200, "endTs": 9300.0})
    correlator.network.on_complete({"url": url, "method": "GET", "timestamp": 9100.0, "status": 200, "endTs": 9400.0})

    # One of the two pairings was ambiguous; the other is clean.
    assert [t.degraded for t in correlator.network.all()].count(True) == 1
    ctx = asyncio.run(correlator.correlate({"message": "boom", "stack": STACK, "timestamp": 10000.0}))
    assert ctx.confidence == "high"
    assert "1 ambiguous" in ctx.notes["network"]


def test_selector_scopes_component_signal() -> None:
    correlator = _correlator()
    ctx = asyncio.run(correlator.correlate({"message": "boom", "timestamp": 1.0}, selector="#app"))
    assert ctx.components[0]["props"] == {"user": None}
    assert ctx.notes["components"] == "state of App at #app"

    ctx = asyncio.run(correlator.correlate({"message": "boom", "timestamp": 1.0}, selector="#nope"))
    assert ctx.components == []


def test_manifest_module_is_attached() -> None:
    from mcp_servers.websee.manifest import BuildManifest

    manifest = BuildManifest({"modules": [{"id": 12, "name": "./src/App.tsx", "size": 2048, "chunks": [0]}]})
    correlator = _correlator(manifest=manifest)
    ctx = asyncio.run(correlator.correlate({"message": "boom", "stack": STACK, "timestamp": 10000.0}))
    assert ctx.module == {"id": "12", "name": "./src/App.tsx", "size": 2048, "chunks": ["0"]}
    assert "Review module './src/App.tsx' in your bundle" in ctx.recommendations


def test_unresolved_stack_recommends_source_maps() -> None:
    correlator = _correlator(FakeResolver(resolved=False), FakeComponents(empty=True))
    ctx = asyncio.run(correlator.correlate({"message": "boom", "stack": STACK, "timestamp": 10000.0}))
    assert "Enable source maps in your build configuration for better debugging" in ctx.recommendations
    assert ctx.notes["components"] == "no components detected"


def test_confidence_rule() -> None:
    from mcp_servers.websee.correlator import confidence_for

    assert confidence_for(True, True, True) == "high"
    assert confidence_for(True, False, True) == "medium"
    assert confidence_for(False, True, True) == "medium"
    assert confidence_for(True, True, False) == "low"
    assert confidence_for(False, False, True) == "low"


def test_normalize_groups_literal_variants() -> None:
    from mcp_servers.websee.correlator import normalize_message

    assert normalize_message("Cannot read properties of undefined (reading 'map')") == normalize_message(
        'Cannot read properties of undefined (reading "filter")'
    )
    assert normalize_message("Request 42 failed at 0xdeadbeef") == "Request <n> failed"


def test_find_similar_and_recurring() -> None:
    from mcp_servers.websee.correlator import PageError

    correlator = _correlator()
    for i, message in enumerate(
        [
            "Cannot read properties of undefined (reading 'map')",
            "Cannot read properties of undefined (reading 'length')",
            "Cannot read properties of null (reading 'x')",
            "Network request failed",
        ]
    ):
        correlator.errors.record(PageError(message=message, timestamp=1000.0 + i))

    similar = correlator.find_similar("Cannot read properties of undefined (reading 'foo')")
    assert [round(s["similarity"], 2) for s in similar] == [1.0, 0.75]
    assert similar[0]["count"] == 2

    recurring = correlator.recurring()
    assert len(recurring) == 1
    assert recurring[0]["count"] == 2
    assert recurring[0]["example"].endswith("(reading 'length')")


def test_root_cause_ranks_failed_request_first() -> None:
    from mcp_servers.websee.correlator import PageError

    correlator = _correlator()
    _failed_request(correlator, ts=9000.0)
    correlator.errors.record(PageError(message="Something else exploded", timestamp=9800.0))

    out = correlator.find_root_cause({"message": "Cannot read properties of undefined (reading 'items')", "timestamp": 10000.0})
    kinds = [c["kind"] for c in out["candidates"]]
    assert kinds == ["network", "error"]
    assert out["candidates"][0]["score"] == 1.9
    assert out["candidates"][0]["gapMs"] == 500.0
    assert out["category"] == "type"
    assert out["occurrences"] == 1


def test_root_cause_promotes_unknown_to_network() -> None:
    correlator = _correlator()
    _failed_request(correlator, ts=9000.0, status=503)
    out = correlator.find_root_cause({"message": "Something broke", "timestamp": 10000.0})
    assert out["category"] == "network"
    assert out["description"].startswith("Something broke. Network request failure.")


def test_error_log_is_bounded_and_fed_by_registry() -> None:
    from mcp_servers.websee.correlator import ErrorLog, PageError
    from mcp_servers.websee.instrumentation import InstrumentationRegistry

    log = ErrorLog(2)
    registry = InstrumentationRegistry(session=None)
    log.attach(registry)
    for i in range(3):
        registry.publish("error", {"kind": "error", "message": f"e{i}", "timestamp": i, "lineno": 3.0})
    assert [e.message for e in log] == ["e1", "e2"]
    assert log.recent(1)[0].lineno == 3

    log.detach()
    registry.publish("error", {"kind": "error", "message": "late"})
    assert len(log) == 2

    coerced = PageError.coerce(ValueError("bad value"))
    assert (coerced.name, coerced.message) == ("ValueError", "bad value")
