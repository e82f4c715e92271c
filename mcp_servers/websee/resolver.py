"""Minified location -> original source location.

Maps are acquired per bundle (inline data URL, then sibling map file, then an
explicit override path), parsed once and kept in a bounded LRU. An entry that
is being used by an in-flight resolution is pinned and never evicted; when the
cache is full of pinned entries a freshly parsed map is used without caching.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
import urllib.parse
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import WebSeeConfig
from .http_client import HttpClientError, http_get
from .sourcemap import SourceMap, SourceMapError
from .symbols import extract_exports, extract_imports, extract_types, find_definition_in

logger = logging.getLogger("mcp.websee.resolver")

CONTEXT_LINES = 3
SLOW_RESOLVE_S = 0.1
MAPPING_SAMPLE = 20

_DIRECTIVE_RE = re.compile(r"[#@]\s*sourceMappingURL\s*=\s*([^\s'\"*]+)")
_V8_FRAME_RE = re.compile(r"^\s*at\s+(?:(?P<fn>.*?)\s+\()?(?P<url>[^()\s]+?):(?P<line>\d+):(?P<col>\d+)\)?\s*$")
_GECKO_FRAME_RE = re.compile(r"^\s*(?P<fn>[^@\s]*)@(?P<url>.+?):(?P<line>\d+):(?P<col>\d+)\s*$")

# Fetcher contract: url -> {"body": str, "headers": {lowercase: value}} or None.
Fetcher = Callable[[str], Awaitable[dict[str, Any] | None]]


def parse_stack_frame(line: str) -> dict[str, Any] | None:
    """Parse one V8 (`at fn (url:l:c)`) or Gecko (`fn@url:l:c`) frame."""
    text = (line or "").strip()
    m = _V8_FRAME_RE.match(text) or _GECKO_FRAME_RE.match(text)
    if not m:
        return None
    fn = (m.group("fn") or "").strip() or None
    return {"function": fn, "url": m.group("url"), "line": int(m.group("line")), "column": int(m.group("col"))}


def find_map_directive(text: str) -> str | None:
    """Last `sourceMappingURL` directive in a bundle body."""
    found = None
    for m in _DIRECTIVE_RE.finditer(text or ""):
        found = m.group(1)
    return found


def decode_data_url(url: str) -> str:
    header, sep, payload = url.partition(",")
    if not sep:
        raise SourceMapError("Malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload + "=" * (-len(payload) % 4)).decode("utf-8", errors="replace")
        except ValueError as exc:
            raise SourceMapError(f"Invalid base64 in inline source map: {exc}") from exc
    return urllib.parse.unquote(payload)


@dataclass(slots=True)
class SourceMapEntry:
    bundle: str
    source_map: SourceMap
    origin: str
    last_used: float
    pins: int = 0


@dataclass(frozen=True, slots=True)
class ResolvedLocation:
    bundle: str
    generated_line: int
    generated_column: int
    file: str
    line: int
    column: int
    name: str | None = None
    context: tuple[str, ...] = ()
    context_start: int | None = None
    degraded: bool = False
    reason: str | None = None

    @classmethod
    def unresolved(cls, bundle: str, line: int, column: int, reason: str) -> ResolvedLocation:
        return cls(bundle, line, column, bundle, line, column, degraded=True, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "name": self.name,
            "generated": {"bundle": self.bundle, "line": self.generated_line, "column": self.generated_column},
            "degraded": self.degraded,
        }
        if self.context:
            out["context"] = {"startLine": self.context_start, "lines": list(self.context)}
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass(slots=True)
class _Acquired:
    source_map: SourceMap | None
    origin: str | None = None
    attempts: list[str] = field(default_factory=list)


class SourceLocationResolver:
    def __init__(
        self,
        config: WebSeeConfig | None = None,
        *,
        fetch: Fetcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or WebSeeConfig.from_env()
        self.capacity = max(1, int(self.config.sourcemap_cache_size))
        self._fetch = fetch or self._default_fetch
        self._clock = clock
        self._cache: OrderedDict[str, SourceMapEntry] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._bundles: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # ── acquisition ───────────────────────────────────────────────────────

    async def _default_fetch(self, url: str) -> dict[str, Any] | None:
        if url.startswith("file://"):
            return await self._read_path(urllib.parse.urlparse(url).path)
        try:
            res = await asyncio.to_thread(http_get, url, self.config)
        except HttpClientError as exc:
            logger.debug("Fetch failed for %s: %s", url, exc)
            return None
        if int(res.get("status") or 0) >= 400:
            return None
        return res

    @staticmethod
    async def _read_path(path: str) -> dict[str, Any] | None:
        p = Path(path).expanduser()
        try:
            body = await asyncio.to_thread(p.read_text, encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Cannot read %s: %s", p, exc)
            return None
        return {"body": body, "headers": {}}

    def note_bundle(self, url: str, text: str | None = None, headers: dict[str, Any] | None = None) -> None:
        """Remember a bundle body / map header seen while the page loaded."""
        info = self._bundles.setdefault(url, {})
        if text is not None:
            info["body"] = text
        if headers:
            info["headers"] = {str(k).lower(): v for k, v in headers.items()}
        self._bundles.move_to_end(url)
        while len(self._bundles) > self.capacity * 4:
            self._bundles.popitem(last=False)

    async def _load(self, bundle: str, override: str | None) -> _Acquired:
        acquired = _Acquired(None)
        info = self._bundles.get(bundle) or {}
        body = info.get("body")
        headers = dict(info.get("headers") or {})
        base = str(info.get("url") or bundle)
        if body is None:
            fetched = await self._fetch(bundle)
            if fetched is not None:
                body = fetched.get("body")
                base = str(fetched.get("url") or bundle)
                headers.update({str(k).lower(): v for k, v in (fetched.get("headers") or {}).items()})
                self.note_bundle(bundle, body, headers)
                self._bundles[bundle]["url"] = base

        directive = find_map_directive(body) if isinstance(body, str) else None

        # 1) inline
        if directive and directive.startswith("data:"):
            try:
                acquired.source_map = SourceMap.parse(decode_data_url(directive))
                acquired.origin = "inline"
                return acquired
            except SourceMapError as exc:
                acquired.attempts.append(f"inline: {exc}")
        else:
            acquired.attempts.append("inline: no embedded map")

        # 2) sibling map file
        ref = None
        if directive and not directive.startswith("data:"):
            ref = directive
        elif headers.get("sourcemap") or headers.get("x-sourcemap"):
            ref = str(headers.get("sourcemap") or headers.get("x-sourcemap"))
        if ref:
            map_url = urllib.parse.urljoin(base, ref)
            fetched = await self._fetch(map_url)
            if fetched is not None and isinstance(fetched.get("body"), str):
                try:
                    acquired.source_map = SourceMap.parse(fetched["body"])
                    acquired.origin = map_url
                    return acquired
                except SourceMapError as exc:
                    acquired.attempts.append(f"sibling {map_url}: {exc}")
            else:
                acquired.attempts.append(f"sibling {map_url}: not reachable")
        else:
            acquired.attempts.append("sibling: no sourceMappingURL directive or header")

        # 3) explicit override
        path = override or self.config.sourcemap_overrides.get(bundle)
        if path is None:
            name = urllib.parse.urlparse(bundle).path.rsplit("/", 1)[-1]
            path = self.config.sourcemap_overrides.get(name) if name else None
        if path:
            fetched = await (self._fetch(path) if "://" in path else self._read_path(path))
            if fetched is not None and isinstance(fetched.get("body"), str):
                try:
                    acquired.source_map = SourceMap.parse(fetched["body"])
                    acquired.origin = path
                    return acquired
                except SourceMapError as exc:
                    acquired.attempts.append(f"override {path}: {exc}")
            else:
                acquired.attempts.append(f"override {path}: not readable")
        else:
            acquired.attempts.append("override: none configured")
        return acquired

    def _lock_for(self, bundle: str) -> asyncio.Lock:
        lock = self._locks.get(bundle)
        if lock is None:
            lock = self._locks[bundle] = asyncio.Lock()
        return lock

    async def _acquire(self, bundle: str, override: str | None = None) -> tuple[SourceMapEntry | None, list[str]]:
        """Return a pinned entry (caller must `_release`) or None plus attempt notes."""
        entry = self._cache.get(bundle)
        if entry is not None:
            self._cache.move_to_end(bundle)
            entry.pins += 1
            entry.last_used = self._clock()
            self.hits += 1
            return entry, []

        pending = self._inflight.get(bundle)
        if pending is not None:
            # Each waiter pins for itself after the shared load settles.
            entry, attempts = await asyncio.shield(pending)
            if entry is not None:
                entry.pins += 1
                entry.last_used = self._clock()
            return entry, attempts

        self.misses += 1
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[bundle] = future
        result: tuple[SourceMapEntry | None, list[str]] = (None, ["load failed"])
        try:
            async with self._lock_for(bundle):
                acquired = await self._load(bundle, override)
            if acquired.source_map is None:
                result = (None, acquired.attempts)
            else:
                entry = self._store(bundle, acquired.source_map, acquired.origin or "")
                entry.pins += 1
                result = (entry, acquired.attempts)
            return result
        finally:
            self._inflight.pop(bundle, None)
            if bundle not in self._cache:
                self._locks.pop(bundle, None)
            if not future.done():
                future.set_result(result)

    def _store(self, bundle: str, source_map: SourceMap, origin: str) -> SourceMapEntry:
        entry = SourceMapEntry(bundle, source_map, origin, self._clock())
        if len(self._cache) >= self.capacity and not self._evict_one():
            logger.debug("Source map cache full of in-use entries; %s used uncached", bundle)
            return entry
        self._cache[bundle] = entry
        return entry

    def _evict_one(self) -> bool:
        for key, entry in self._cache.items():
            if entry.pins == 0:
                del self._cache[key]
                self._locks.pop(key, None)
                self.evictions += 1
                return True
        return False

    @staticmethod
    def _release(entry: SourceMapEntry) -> None:
        entry.pins = max(0, entry.pins - 1)

    # ── queries ───────────────────────────────────────────────────────────

    async def resolve(self, bundle: str, line: int, column: int, *, override: str | None = None) -> ResolvedLocation:
        """Best-effort original location; degraded result keeps minified coordinates."""
        started = self._clock()
        try:
            entry, attempts = await self._acquire(bundle, override)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Source map acquisition failed for %s: %s", bundle, exc)
            return ResolvedLocation.unresolved(bundle, line, column, f"source map acquisition failed: {exc}")
        if entry is None:
            return ResolvedLocation.unresolved(bundle, line, column, "no source map: " + "; ".join(attempts))
        try:
            return self._lookup(entry, bundle, line, column)
        finally:
            self._release(entry)
            elapsed = self._clock() - started
            if elapsed > SLOW_RESOLVE_S:
                logger.warning("Slow source map resolution for %s (%.0f ms)", bundle, elapsed * 1000)

    def _lookup(self, entry: SourceMapEntry, bundle: str, line: int, column: int) -> ResolvedLocation:
        mapping = entry.source_map.lookup(line, column)
        if mapping is None or mapping.source is None:
            return ResolvedLocation.unresolved(bundle, line, column, f"no mapping at {line}:{column}")
        orig_line = mapping.original_line or 1
        context: tuple[str, ...] = ()
        start = None
        content = entry.source_map.source_content(mapping.source)
        if content is not None:
            lines = content.splitlines()
            start = max(1, orig_line - CONTEXT_LINES)
            context = tuple(lines[start - 1 : orig_line + CONTEXT_LINES])
        return ResolvedLocation(
            bundle,
            line,
            column,
            mapping.source,
            orig_line,
            mapping.original_column or 0,
            mapping.name,
            context,
            start if context else None,
        )

    async def generated_position(self, bundle: str, source: str, line: int, column: int = 0) -> dict[str, Any] | None:
        entry, _ = await self._acquire(bundle)
        if entry is None:
            return None
        try:
            pos = entry.source_map.generated_position(source, line, column)
        finally:
            self._release(entry)
        if pos is None:
            return None
        return {"bundle": bundle, "line": pos[0], "column": pos[1]}

    def _content_for(self, file: str) -> tuple[str, str] | None:
        """(matched source name, content) from the most recently used map that embeds `file`."""
        for entry in reversed(self._cache.values()):
            content = entry.source_map.source_content(file)
            if content is not None:
                return entry.source_map.match_source(file) or file, content
        return None

    def get_content(self, file: str, start_line: int | None = None, end_line: int | None = None) -> dict[str, Any]:
        found = self._content_for(file)
        if found is None:
            return {"available": False, "file": file, "reason": "no embedded source content for this file"}
        name, content = found
        lines = content.splitlines()
        total = len(lines)
        first = max(1, start_line or 1)
        last = min(total, end_line or total)
        return {
            "available": True,
            "file": name,
            "startLine": first,
            "endLine": last,
            "totalLines": total,
            "content": "\n".join(lines[first - 1 : last]),
        }

    def find_definition(self, name: str, file: str | None = None) -> dict[str, Any]:
        """First function/const/class definition of `name` across embedded sources."""
        searched = 0
        for source in self.sources():
            if file and file not in source:
                continue
            found = self._content_for(source)
            if found is None:
                continue
            searched += 1
            hit = find_definition_in(found[1], name)
            if hit is not None:
                line, code = hit
                return {
                    "found": True,
                    "name": name,
                    "file": source,
                    "line": line,
                    "column": 0,
                    "code": code,
                    "exports": [e["name"] for e in extract_exports(found[1])],
                }
        return {
            "found": False,
            "name": name,
            "searched": searched,
            "reason": f"no definition of {name!r} in {searched} embedded sources",
        }

    def get_symbols(self, file: str) -> dict[str, Any]:
        found = self._content_for(file)
        if found is None:
            return {"available": False, "file": file, "reason": "no embedded source content for this file"}
        name, content = found
        return {
            "available": True,
            "file": name,
            "exports": extract_exports(content),
            "imports": extract_imports(content),
            "types": extract_types(content),
        }

    async def map_bundle(self, bundle: str, *, sample: int = MAPPING_SAMPLE) -> dict[str, Any]:
        """One bundle's original sources plus a sample of its mappings."""
        entry, attempts = await self._acquire(bundle)
        if entry is None:
            return {"bundle": bundle, "available": False, "reason": "no source map: " + "; ".join(attempts)}
        try:
            sm = entry.source_map
            mappings = []
            for m in sm.iter_mappings():
                if len(mappings) >= sample:
                    break
                if m.source is None:
                    continue
                mappings.append(
                    {
                        "source": m.source,
                        "generatedLine": m.generated_line,
                        "generatedColumn": m.generated_column,
                        "originalLine": m.original_line,
                        "originalColumn": m.original_column,
                    }
                )
            return {
                "bundle": bundle,
                "available": True,
                "origin": entry.origin,
                "sources": list(sm.sources),
                "sourceCount": len(sm.sources),
                "withContent": sum(1 for s in sm.sources if sm.source_content(s) is not None),
                "mappingCount": sm.mapping_count,
                "mappings": mappings,
            }
        finally:
            self._release(entry)

    async def trace_stack(self, stack: str) -> dict[str, Any]:
        """Resolve every frame of a stack trace independently."""
        lines = [ln for ln in (stack or "").splitlines() if ln.strip()]
        parsed = [parse_stack_frame(ln) for ln in lines]
        pending = [self.resolve(p["url"], p["line"], p["column"]) for p in parsed if p is not None]
        resolved = iter(await asyncio.gather(*pending))

        frames: list[dict[str, Any]] = []
        passthrough: list[str] = []
        ok = 0
        for raw, frame in zip(lines, parsed):
            if frame is None:
                # Message line or unparseable frame: kept verbatim, not counted.
                passthrough.append(raw.strip())
                continue
            loc = next(resolved)
            item = {"raw": raw.strip(), "function": frame["function"], "resolved": not loc.degraded}
            item["location"] = loc.to_dict()
            if not loc.degraded:
                ok += 1
            frames.append(item)
        return {"frames": frames, "lines": passthrough, "resolved": ok, "unresolved": len(frames) - ok}

    def sources(self) -> list[str]:
        out: set[str] = set()
        for entry in self._cache.values():
            out.update(entry.source_map.sources)
        return sorted(out)

    def clear(self) -> int:
        """Drop every cached map that is not in use; returns the number dropped."""
        dropped = [k for k, e in self._cache.items() if e.pins == 0]
        for key in dropped:
            del self._cache[key]
            self._locks.pop(key, None)
        return len(dropped)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._cache),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "inFlight": len(self._inflight),
            "pinned": sum(1 for e in self._cache.values() if e.pins),
            "bundles": list(self._cache.keys()),
        }


__all__ = [
    "ResolvedLocation",
    "SourceLocationResolver",
    "SourceMapEntry",
    "decode_data_url",
    "find_map_directive",
    "parse_stack_frame",
]
