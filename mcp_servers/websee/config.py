from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_int(name: str, default: int, *, min_v: int, max_v: int) -> int:
    try:
        value = int(os.environ.get(name, str(default)))
    except (TypeError, ValueError):
        value = default
    return max(min_v, min(value, max_v))


def _env_float(name: str, default: float, *, min_v: float, max_v: float) -> float:
    try:
        value = float(os.environ.get(name, str(default)))
    except (TypeError, ValueError):
        value = default
    return max(min_v, min(value, max_v))


def _parse_overrides(raw: str) -> dict[str, str]:
    """Parse `bundle=path,bundle=path` into a mapping (empty pairs ignored)."""
    out: dict[str, str] = {}
    for pair in (raw or "").split(","):
        if "=" not in pair:
            continue
        bundle, _, path = pair.partition("=")
        bundle = bundle.strip()
        path = path.strip()
        if bundle and path:
            out[bundle] = expand_path(path)
    return out


@dataclass
class WebSeeConfig:
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_timeout: float = 5.0
    instrumentation: bool = True
    sourcemap_cache_size: int = 50
    sourcemap_overrides: dict[str, str] = field(default_factory=dict)
    tree_max_depth: int = 64
    tree_max_nodes: int = 2000
    max_traces: int = 500
    max_errors: int = 200
    correlation_window_ms: int = 5000
    allow_hosts: list[str] = field(default_factory=list)
    http_timeout: float = 10.0
    http_max_bytes: int = 5_000_000

    @property
    def cdp_http_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"

    @classmethod
    def from_env(cls) -> WebSeeConfig:
        host = (os.environ.get("MCP_WEBSEE_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        allow_raw = os.environ.get("MCP_ALLOW_HOSTS", "")
        allow_hosts = [host.strip().lower() for host in allow_raw.split(",") if host.strip() and host.strip() != "*"]
        return cls(
            cdp_host=host,
            cdp_port=_env_int("MCP_BROWSER_PORT", 9222, min_v=1, max_v=65535),
            cdp_timeout=_env_float("MCP_WEBSEE_CDP_TIMEOUT", 5.0, min_v=0.5, max_v=60.0),
            instrumentation=os.environ.get("MCP_WEBSEE_INSTRUMENTATION", "1") != "0",
            sourcemap_cache_size=_env_int("MCP_WEBSEE_SOURCEMAP_CACHE", 50, min_v=1, max_v=1000),
            sourcemap_overrides=_parse_overrides(os.environ.get("MCP_WEBSEE_SOURCEMAP_OVERRIDES", "")),
            tree_max_depth=_env_int("MCP_WEBSEE_TREE_DEPTH", 64, min_v=1, max_v=512),
            tree_max_nodes=_env_int("MCP_WEBSEE_TREE_NODES", 2000, min_v=1, max_v=20000),
            max_traces=_env_int("MCP_WEBSEE_MAX_TRACES", 500, min_v=1, max_v=10000),
            max_errors=_env_int("MCP_WEBSEE_MAX_ERRORS", 200, min_v=1, max_v=5000),
            correlation_window_ms=_env_int("MCP_WEBSEE_CORRELATION_WINDOW_MS", 5000, min_v=0, max_v=600_000),
            allow_hosts=allow_hosts,
            http_timeout=_env_float("MCP_HTTP_TIMEOUT", 10.0, min_v=0.5, max_v=120.0),
            http_max_bytes=_env_int("MCP_HTTP_MAX_BYTES", 5_000_000, min_v=1024, max_v=200_000_000),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
