"""Query interface over one attached page.

Wires the registry, resolver, component tracker, network tracer, error log
and correlator together. Instrumentation installs lazily on the first query
that needs it. A query interrupted by navigation is retried once, and a second
interruption yields a degraded result instead of an exception.
"""

from __future__ import annotations

import logging
from typing import Any

from .cdp import PageSession, attach
from .components import ComponentArena, ComponentStateTracker, RenderReport, Snapshot
from .config import WebSeeConfig
from .correlator import ErrorContext, ErrorCorrelator, ErrorLog
from .errors import IntrospectionError, NavigationInterrupted, retry_on_navigation
from .instrumentation import InstrumentationRegistry
from .manifest import BuildManifest
from .network import NetworkActivityTracer, NetworkTrace
from .resolver import ResolvedLocation, SourceLocationResolver

logger = logging.getLogger("mcp.websee.session")


def _degraded_tree(exc: NavigationInterrupted, _self: Any, selector: str | None = None) -> ComponentArena:
    arena = ComponentArena()
    arena.degraded = True
    arena.message = f"Page navigated during the query: {exc.reason}"
    return arena


def _degraded_detail(exc: NavigationInterrupted, _self: Any, node_id: str) -> Snapshot:
    return Snapshot(False, node_id, message=f"Page navigated during the query: {exc.reason}", degraded=True)


def _degraded_renders(exc: NavigationInterrupted, _self: Any, node_id: str, window_ms: int, *args: Any, **kwargs: Any) -> RenderReport:
    return RenderReport(node_id, window_ms, found=False, stopped_by="navigation", message=exc.reason)


class IntrospectionSession:
    def __init__(
        self,
        page: PageSession | Any,
        config: WebSeeConfig | None = None,
        *,
        resolver: SourceLocationResolver | None = None,
        manifest: BuildManifest | None = None,
    ) -> None:
        self.page = page
        self.config = config or WebSeeConfig.from_env()
        self.registry = InstrumentationRegistry(page, self.config)
        self.resolver = resolver or SourceLocationResolver(self.config)
        self.components = ComponentStateTracker(page, self.registry, self.config)
        self.network = NetworkActivityTracer(self.config)
        self.network.attach(self.registry)
        self.errors = ErrorLog(self.config.max_errors)
        self.errors.attach(self.registry)
        self.correlator = ErrorCorrelator(
            self.resolver,
            self.components,
            self.network,
            self.errors,
            manifest=manifest,
            config=self.config,
        )
        self._nav = self.registry.subscribe("navigation", self._on_navigation)

    @classmethod
    async def connect(
        cls,
        config: WebSeeConfig | None = None,
        *,
        url_hint: str | None = None,
        manifest: BuildManifest | None = None,
    ) -> IntrospectionSession:
        config = config or WebSeeConfig.from_env()
        page = await attach(config, url_hint=url_hint)
        return cls(page, config, manifest=manifest)

    def _on_navigation(self, event: dict[str, Any]) -> None:
        logger.info("Page navigated to %s", event.get("url"))

    async def ensure_installed(self) -> dict[str, Any]:
        return await self.registry.install()

    # ── queries ───────────────────────────────────────────────────────────

    async def resolve_location(self, bundle: str, line: int, column: int) -> ResolvedLocation:
        return await self.resolver.resolve(bundle, line, column)

    @retry_on_navigation(_degraded_tree)
    async def get_component_tree(self, selector: str | None = None) -> ComponentArena:
        await self.ensure_installed()
        return await self.components.build_tree(selector)

    @retry_on_navigation(_degraded_detail)
    async def get_component_detail(self, node_id: str) -> Snapshot:
        await self.ensure_installed()
        return await self.components.get_instance(node_id)

    @retry_on_navigation(_degraded_renders)
    async def track_renders(self, node_id: str, window_ms: int, max_renders: int | None = None) -> RenderReport:
        await self.ensure_installed()
        return await self.components.track_renders(node_id, window_ms, max_renders)

    async def get_network_traces(self, pattern: str | None = None) -> list[NetworkTrace]:
        await self.ensure_installed()
        return self.network.get_by_pattern(pattern)

    async def correlate_error(self, error: Any, window_ms: float | None = None, selector: str | None = None) -> ErrorContext:
        try:
            await self.ensure_installed()
        except IntrospectionError as exc:
            # Correlation still runs on whatever signals remain.
            logger.warning("Correlating without instrumentation: %s", exc)
        return await self.correlator.correlate(error, window_ms, selector)

    async def close(self) -> None:
        self._nav.close()
        self.network.detach()
        self.errors.detach()
        self.registry.close()
        await self.page.close()


__all__ = ["IntrospectionSession"]
