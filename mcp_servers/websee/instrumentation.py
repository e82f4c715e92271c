"""Host side of the page instrumentation.

`InstrumentationRegistry` owns the page-to-host channel: it installs the page
payload once per page (pre-navigation + immediate), receives binding calls and
fans them out to typed subscriptions. Nothing else touches page globals.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from .config import WebSeeConfig
from .errors import CdpError, InstrumentationError, NavigationInterrupted
from .page_script import (
    BINDING_NAME,
    INSTRUMENTATION_SCRIPT_SOURCE,
    INSTRUMENTATION_SCRIPT_VERSION,
    MARKER_CHECK_EXPRESSION,
    call_expression,
)

logger = logging.getLogger("mcp.websee.instrumentation")

EVENT_KINDS = frozenset(
    {
        "network:start",
        "network:complete",
        "network:error",
        "network:body",
        "render",
        "error",
        "navigation",
    }
)

EventCallback = Callable[[dict[str, Any]], None]


async def call_page(session: Any, path: str, *args: Any, tool: str = "page", timeout: float | None = None) -> Any:
    """Call `globalThis.__websee.<path>(...)`; a missing payload means the page navigated."""
    result = await session.eval_js(call_expression(path, *args), timeout=timeout)
    if isinstance(result, dict) and result.get("__missing"):
        raise NavigationInterrupted(
            tool=tool,
            action=path,
            reason="Instrumentation payload is missing from the page (navigated or reloaded)",
            suggestion="Re-install instrumentation and retry",
        )
    return result


class Subscription:
    """Handle for one registered callback; release with close() or `with`."""

    __slots__ = ("_registry", "kind", "callback", "_active")

    def __init__(self, registry: InstrumentationRegistry, kind: str, callback: EventCallback) -> None:
        self._registry = registry
        self.kind = kind
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._registry._unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class InstrumentationRegistry:
    def __init__(self, session: Any, config: WebSeeConfig | None = None) -> None:
        self.session = session
        self.config = config or WebSeeConfig.from_env()
        self._lock = asyncio.Lock()
        self._installed = False
        self._script_id: str | None = None
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._removers: list[Callable[[], None]] = []
        self.dropped = 0

    @property
    def installed(self) -> bool:
        return self._installed

    # ── install ───────────────────────────────────────────────────────────

    async def install(self) -> dict[str, Any]:
        """Install page hooks once; later calls re-check the page marker only.

        Raises InstrumentationError (fatal) when the payload cannot be installed.
        """
        if not self.config.instrumentation:
            return {"enabled": False}

        async with self._lock:
            if self._installed:
                try:
                    present = await self.session.eval_js(MARKER_CHECK_EXPRESSION, timeout=1.0) is True
                except (CdpError, NavigationInterrupted):
                    present = False
                if present:
                    return {"enabled": True, "cached": True, "scriptId": self._script_id}
                logger.debug("Instrumentation marker missing; re-injecting")
            return await self._install_locked()

    async def _install_locked(self) -> dict[str, Any]:
        self._wire()
        try:
            await self.session.enable_runtime()
            await self.session.enable_page()
            await self.session.send("Runtime.addBinding", {"name": BINDING_NAME})
            if self._script_id is None:
                res = await self.session.send(
                    "Page.addScriptToEvaluateOnNewDocument",
                    {"source": INSTRUMENTATION_SCRIPT_SOURCE},
                )
                self._script_id = res.get("identifier") if isinstance(res, dict) else None
            result = await self._evaluate_payload()
        except CdpError as exc:
            raise InstrumentationError(
                tool="instrumentation",
                action="install",
                reason=str(exc),
                suggestion="Check that the page target is alive and the DevTools endpoint is reachable",
            ) from exc

        if isinstance(result, dict) and result.get("conflict"):
            raise InstrumentationError(
                tool="instrumentation",
                action="install",
                reason=f"Page already carries an incompatible payload (version {result.get('version')})",
                suggestion="Reload the page so the current payload is injected on the new document",
                details={"expected": INSTRUMENTATION_SCRIPT_VERSION},
            )

        try:
            present = await self.session.eval_js(MARKER_CHECK_EXPRESSION, timeout=1.0) is True
        except (CdpError, NavigationInterrupted):
            present = False
        if not present:
            raise InstrumentationError(
                tool="instrumentation",
                action="install",
                reason="Payload evaluated but the page marker is missing",
                suggestion="The page may block script evaluation (CSP) or replaced globals",
            )

        self._installed = True
        await self._flush()
        logger.info("Instrumentation v%s installed", INSTRUMENTATION_SCRIPT_VERSION)
        return {
            "enabled": True,
            "cached": False,
            "scriptId": self._script_id,
            "already": bool(isinstance(result, dict) and result.get("already")),
        }

    async def _evaluate_payload(self) -> Any:
        # One navigation mid-install is fine: the new-document script covers it.
        for attempt in range(2):
            try:
                return await self.session.eval_js(INSTRUMENTATION_SCRIPT_SOURCE)
            except NavigationInterrupted:
                if attempt:
                    raise InstrumentationError(
                        tool="instrumentation",
                        action="install",
                        reason="Page kept navigating while installing",
                        suggestion="Retry once the page has settled",
                    ) from None
        return None

    async def _flush(self) -> None:
        try:
            await self.session.eval_js(call_expression("flush"), timeout=1.0)
        except (CdpError, NavigationInterrupted) as exc:
            logger.debug("Flush of buffered page events failed: %s", exc)

    def _wire(self) -> None:
        if self._removers:
            return
        self._removers.append(self.session.on("Runtime.bindingCalled", self._on_binding))
        self._removers.append(self.session.on("Page.frameNavigated", self._on_frame_navigated))

    # ── events ────────────────────────────────────────────────────────────

    def _on_binding(self, params: dict[str, Any]) -> None:
        if params.get("name") != BINDING_NAME:
            return
        payload = params.get("payload")
        try:
            event = json.loads(payload) if isinstance(payload, str) else None
        except json.JSONDecodeError:
            event = None
        kind = event.get("kind") if isinstance(event, dict) else None
        if not isinstance(kind, str) or kind not in EVENT_KINDS:
            self.dropped += 1
            logger.debug("Dropped malformed page event: %.200r", payload)
            return
        self.publish(kind, event)

    def _on_frame_navigated(self, params: dict[str, Any]) -> None:
        frame = params.get("frame")
        if not isinstance(frame, dict) or frame.get("parentId"):
            return
        self.publish(
            "navigation",
            {"kind": "navigation", "url": frame.get("url"), "timestamp": time.time() * 1000},
        )

    def publish(self, kind: str, event: dict[str, Any]) -> None:
        """Deliver an event to every subscriber of `kind`, in arrival order."""
        for sub in list(self._subscriptions.get(kind, ())):
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber for %s failed", kind)

    def subscribe(self, kind: str, callback: EventCallback) -> Subscription:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        sub = Subscription(self, kind, callback)
        self._subscriptions.setdefault(kind, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.kind)
        if subs and sub in subs:
            subs.remove(sub)

    def subscriber_count(self, kind: str) -> int:
        return len(self._subscriptions.get(kind, ()))

    def close(self) -> None:
        for remove in self._removers:
            remove()
        self._removers.clear()
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.close()
        self._subscriptions.clear()


__all__ = ["EVENT_KINDS", "InstrumentationRegistry", "Subscription", "call_page"]
