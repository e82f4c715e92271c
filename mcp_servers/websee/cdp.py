"""Async page transport over the Chrome DevTools Protocol.

- CdpConnection: one websocket, request/response by id, events fanned out to listeners
- PageSession: the page-level surface the engine uses (evaluate, domains, listeners)
- attach(): pick a page target from the DevTools HTTP endpoint and connect
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from .config import WebSeeConfig
from .errors import CdpError, NavigationInterrupted, is_navigation_error
from .http_client import get_json

logger = logging.getLogger("mcp.websee.cdp")

EventListener = Callable[[dict[str, Any]], None]


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "Page introspection requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class CdpConnection:
    """Low-level CDP WebSocket connection (asyncio)."""

    def __init__(self, ws: Any, *, ws_url: str = "", timeout: float = 5.0) -> None:
        self.ws = ws
        self.ws_url = ws_url
        self.timeout = float(timeout)
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: dict[str, list[EventListener]] = {}
        self._reader: asyncio.Task | None = None
        self._closed = False

    @classmethod
    async def connect(cls, ws_url: str, *, timeout: float = 5.0) -> CdpConnection:
        websockets = _import_websockets()
        try:
            ws = await websockets.connect(ws_url, max_size=None, open_timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpError(f"Could not connect to {ws_url}: {exc}") from exc
        conn = cls(ws, ws_url=ws_url, timeout=timeout)
        conn.start()
        return conn

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name="websee-cdp-reader")

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, method: str, listener: EventListener) -> Callable[[], None]:
        """Register an event listener; returns a remover."""
        self._listeners.setdefault(method, []).append(listener)

        def remove() -> None:
            listeners = self._listeners.get(method)
            if listeners and listener in listeners:
                listeners.remove(listener)

        return remove

    def dispatch(self, message: dict[str, Any]) -> None:
        """Route one decoded websocket message (response or event)."""
        msg_id = message.get("id")
        if isinstance(msg_id, int):
            fut = self._pending.pop(msg_id, None)
            if fut is None or fut.done():
                return
            if "error" in message:
                err = message.get("error")
                text = err.get("message") if isinstance(err, dict) else str(err)
                fut.set_exception(CdpError(str(text)))
            else:
                result = message.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = message.get("method")
        if not isinstance(method, str):
            return
        params = message.get("params")
        params = params if isinstance(params, dict) else {}
        for listener in list(self._listeners.get(method, ())):
            try:
                listener(params)
            except Exception:  # noqa: BLE001
                # A broken listener must never take down the reader.
                logger.exception("CDP listener for %s failed", method)

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    continue
                if isinstance(data, dict):
                    self.dispatch(data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("CDP reader stopped: %s", exc)
        finally:
            self._fail_pending(CdpError("CDP connection closed"))
            self._closed = True

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(exc)

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send CDP command and wait for its response without blocking the loop."""
        if self._closed:
            raise CdpError("CDP connection closed")
        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            self._pending.pop(msg_id, None)
            raise CdpError(str(exc)) from exc

        try:
            return await asyncio.wait_for(fut, timeout=timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"CDP response timed out ({method})") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def close(self) -> None:
        self._closed = True
        reader = self._reader
        self._reader = None
        with suppress(Exception):
            await self.ws.close()
        if reader is not None:
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending(CdpError("CDP connection closed"))


class PageSession:
    """One attached page context."""

    def __init__(self, conn: Any, *, target_id: str | None = None, url: str | None = None) -> None:
        self.conn = conn
        self.target_id = target_id
        self.url = url
        self._domains: set[str] = set()

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        if timeout is None:
            return await self.conn.send(method, params)
        return await self.conn.send(method, params, timeout=timeout)

    def on(self, method: str, listener: EventListener) -> Callable[[], None]:
        return self.conn.on(method, listener)

    async def _enable(self, domain: str) -> None:
        if domain in self._domains:
            return
        await self.send(f"{domain}.enable")
        self._domains.add(domain)

    async def enable_runtime(self) -> None:
        await self._enable("Runtime")

    async def enable_page(self) -> None:
        await self._enable("Page")

    async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate JavaScript in the page and return the JSON value.

        Context-destroyed errors (navigation mid-call) raise NavigationInterrupted
        so callers can retry once; every other failure is a CdpError.
        """
        try:
            await self.enable_runtime()
            result = await self.send(
                "Runtime.evaluate",
                {"expression": expression, "returnByValue": True, "awaitPromise": True},
                timeout=timeout,
            )
        except CdpError as exc:
            if is_navigation_error(str(exc)):
                raise NavigationInterrupted(
                    tool="page",
                    action="evaluate",
                    reason=str(exc),
                    suggestion="The page navigated during the query; retry once it settles",
                ) from exc
            raise

        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            exception = details.get("exception")
            text = details.get("text") or "Evaluation failed"
            if isinstance(exception, dict) and exception.get("description"):
                text = exception.get("description")
            if is_navigation_error(str(text)):
                raise NavigationInterrupted(tool="page", action="evaluate", reason=str(text))
            raise CdpError(str(text))

        remote = result.get("result")
        if not isinstance(remote, dict):
            return None
        if remote.get("type") == "undefined" or remote.get("subtype") == "null":
            return None
        return remote.get("value")

    async def close(self) -> None:
        close = getattr(self.conn, "close", None)
        if close is not None:
            await close()


def _pick_page_target(targets: Any, url_hint: str | None = None) -> dict[str, Any]:
    pages = [t for t in targets or [] if isinstance(t, dict) and t.get("type") == "page" and t.get("webSocketDebuggerUrl")]
    if not pages:
        raise CdpError("No attachable page target found")
    if url_hint:
        for target in pages:
            if url_hint in str(target.get("url") or ""):
                return target
    return pages[0]


async def attach(config: WebSeeConfig, *, url_hint: str | None = None) -> PageSession:
    """Attach to an existing page over the DevTools endpoint (browser lifecycle is external)."""
    targets = await asyncio.to_thread(get_json, f"{config.cdp_http_url}/json/list", config.cdp_timeout)
    target = _pick_page_target(targets, url_hint)
    conn = await CdpConnection.connect(str(target["webSocketDebuggerUrl"]), timeout=config.cdp_timeout)
    logger.info("Attached to page target %s (%s)", target.get("id"), target.get("url"))
    return PageSession(conn, target_id=str(target.get("id") or ""), url=str(target.get("url") or ""))


__all__ = ["CdpConnection", "PageSession", "attach"]
