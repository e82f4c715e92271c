"""
Structured errors for the introspection engine.

Taxonomy:
- NotFound: not an exception; represented by `found=False` on results
- Degraded: not an exception; represented by `degraded=True` plus a reason
- Transient: NavigationInterrupted (retried once by the session, then degraded)
- Fatal: InstrumentationError (surfaced immediately, never retried)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger("mcp.websee.errors")

T = TypeVar("T")


class CdpError(Exception):
    """Transport-level failure talking to the page (socket, timeout, protocol error)."""


@dataclass
class IntrospectionError(Exception):
    """Structured error with context for the calling agent."""

    tool: str
    action: str
    reason: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"[{self.tool}] {self.action} failed: {self.reason}"
        if self.suggestion:
            text += f". Suggestion: {self.suggestion}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "tool": self.tool,
            "action": self.action,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "details": self.details,
        }

    @property
    def kind(self) -> str:
        return "error"


@dataclass
class NavigationInterrupted(IntrospectionError):
    """The page navigated (execution context destroyed) while a query was running."""

    @property
    def kind(self) -> str:
        return "transient"


@dataclass
class InstrumentationError(IntrospectionError):
    """Page-side hooks could not be installed."""

    @property
    def kind(self) -> str:
        return "fatal"


_NAVIGATION_MARKERS = (
    "execution context was destroyed",
    "cannot find context with specified id",
    "inspected target navigated or closed",
    "cannot find default execution context",
)


def is_navigation_error(message: str) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _NAVIGATION_MARKERS)


def retry_on_navigation(
    fallback: Callable[..., T],
    *,
    attempts: int = 2,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry an async query once after NavigationInterrupted, then degrade.

    `fallback(exc, *args, **kwargs)` builds the degraded result from the last
    NavigationInterrupted. Fatal and other errors propagate untouched.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: NavigationInterrupted | None = None
            for attempt in range(max(1, attempts)):
                try:
                    return await func(*args, **kwargs)
                except NavigationInterrupted as exc:
                    last_error = exc
                    logger.info("%s interrupted by navigation (attempt %d)", func.__name__, attempt + 1)
            if last_error is None:
                raise RuntimeError("Retry exhausted without error")
            return fallback(last_error, *args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "CdpError",
    "InstrumentationError",
    "IntrospectionError",
    "NavigationInterrupted",
    "is_navigation_error",
    "retry_on_navigation",
]
