"""Source Map v3 decoding.

Supports plain and indexed (`sections`) maps, `sourceRoot`, `names` and
`sourcesContent`. Lines handed in and out are 1-based, columns 0-based.
"""

from __future__ import annotations

import json
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any

_B64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_B64_VALUES = {ch: i for i, ch in enumerate(_B64_CHARS)}

_VLQ_SHIFT = 5
_VLQ_CONTINUATION = 1 << _VLQ_SHIFT
_VLQ_MASK = _VLQ_CONTINUATION - 1


class SourceMapError(ValueError):
    pass


def decode_vlq(segment: str) -> list[int]:
    values: list[int] = []
    value = 0
    shift = 0
    for ch in segment:
        digit = _B64_VALUES.get(ch)
        if digit is None:
            raise SourceMapError(f"Invalid base64 VLQ character {ch!r}")
        value += (digit & _VLQ_MASK) << shift
        if digit & _VLQ_CONTINUATION:
            shift += _VLQ_SHIFT
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0
    if shift:
        raise SourceMapError("Truncated VLQ segment")
    return values


def encode_vlq(value: int) -> str:
    vlq = (-value << 1) | 1 if value < 0 else value << 1
    out = []
    while True:
        digit = vlq & _VLQ_MASK
        vlq >>= _VLQ_SHIFT
        if vlq:
            digit |= _VLQ_CONTINUATION
        out.append(_B64_CHARS[digit])
        if not vlq:
            return "".join(out)


@dataclass(frozen=True, slots=True)
class Mapping:
    generated_line: int
    generated_column: int
    source: str | None = None
    original_line: int | None = None
    original_column: int | None = None
    name: str | None = None


def _join_source(root: str, source: str) -> str:
    if not root or "://" in source or source.startswith("/"):
        return source
    return root + source if root.endswith("/") else root + "/" + source


def _decode_mappings(
    mappings: str,
    sources: list[str | None],
    names: list[str],
    *,
    line_offset: int = 0,
    column_offset: int = 0,
) -> list[Mapping]:
    out: list[Mapping] = []
    src_idx = 0
    orig_line = 0
    orig_col = 0
    name_idx = 0
    for line_no, line in enumerate(mappings.split(";")):
        gen_col = 0
        if not line:
            continue
        for segment in line.split(","):
            if not segment:
                continue
            fields = decode_vlq(segment)
            gen_col += fields[0]
            col = gen_col + (column_offset if line_no == 0 else 0)
            gen_line = line_no + line_offset + 1
            if len(fields) < 4:
                out.append(Mapping(gen_line, col))
                continue
            src_idx += fields[1]
            orig_line += fields[2]
            orig_col += fields[3]
            name = None
            if len(fields) >= 5:
                name_idx += fields[4]
                if 0 <= name_idx < len(names):
                    name = names[name_idx]
            source = sources[src_idx] if 0 <= src_idx < len(sources) else None
            out.append(Mapping(gen_line, col, source, orig_line + 1, orig_col, name))
    return out


class SourceMap:
    """Parsed, immutable source map with forward and reverse lookup."""

    def __init__(
        self,
        mappings: list[Mapping],
        sources: list[str],
        sources_content: dict[str, str | None] | None = None,
        *,
        file: str | None = None,
    ) -> None:
        self.file = file
        self.sources = tuple(sources)
        self._content = dict(sources_content or {})
        self._lines: dict[int, list[Mapping]] = {}
        for m in sorted(mappings, key=lambda m: (m.generated_line, m.generated_column)):
            self._lines.setdefault(m.generated_line, []).append(m)
        self._columns = {line: [m.generated_column for m in ms] for line, ms in self._lines.items()}
        self._reverse: dict[str, list[Mapping]] | None = None
        self.mapping_count = len(mappings)

    @classmethod
    def parse(cls, raw: str | bytes | dict[str, Any]) -> SourceMap:
        if isinstance(raw, (str, bytes)):
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            # XSSI guard prefix some servers emit.
            if text.startswith(")]}'"):
                text = text.split("\n", 1)[1] if "\n" in text else ""
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise SourceMapError(f"Source map is not valid JSON: {exc}") from exc
        else:
            data = raw
        if not isinstance(data, dict):
            raise SourceMapError("Source map must be a JSON object")

        mappings: list[Mapping] = []
        sources: list[str] = []
        content: dict[str, str | None] = {}
        cls._collect(data, mappings, sources, content, 0, 0)
        return cls(mappings, sources, content, file=data.get("file") if isinstance(data.get("file"), str) else None)

    @classmethod
    def _collect(
        cls,
        data: dict[str, Any],
        mappings: list[Mapping],
        sources: list[str],
        content: dict[str, str | None],
        line_offset: int,
        column_offset: int,
    ) -> None:
        sections = data.get("sections")
        if isinstance(sections, list):
            for section in sections:
                if not isinstance(section, dict) or not isinstance(section.get("map"), dict):
                    continue
                offset = section.get("offset") if isinstance(section.get("offset"), dict) else {}
                cls._collect(
                    section["map"],
                    mappings,
                    sources,
                    content,
                    line_offset + int(offset.get("line") or 0),
                    int(offset.get("column") or 0),
                )
            return

        if data.get("version") not in (3, "3", None):
            raise SourceMapError(f"Unsupported source map version: {data.get('version')}")
        root = data.get("sourceRoot") if isinstance(data.get("sourceRoot"), str) else ""
        # Null entries keep their slot so later source indexes stay aligned.
        section_sources = [_join_source(root, str(s)) if s is not None else None for s in data.get("sources") or []]
        names = [str(n) for n in data.get("names") or []]
        raw_content = data.get("sourcesContent") or []
        for i, src in enumerate(section_sources):
            if src is None:
                continue
            if src not in sources:
                sources.append(src)
            body = raw_content[i] if i < len(raw_content) else None
            if isinstance(body, str) or src not in content:
                content[src] = body if isinstance(body, str) else None
        raw_mappings = data.get("mappings") or ""
        if not isinstance(raw_mappings, str):
            raise SourceMapError("`mappings` must be a string")
        mappings.extend(
            _decode_mappings(
                raw_mappings,
                section_sources,
                names,
                line_offset=line_offset,
                column_offset=column_offset,
            )
        )

    def lookup(self, line: int, column: int) -> Mapping | None:
        """Original position for a generated one (greatest column <= requested)."""
        columns = self._columns.get(line)
        if not columns:
            return None
        idx = bisect_right(columns, column) - 1
        if idx < 0:
            return None
        mapping = self._lines[line][idx]
        return mapping if mapping.source is not None else None

    def generated_position(self, source: str, line: int, column: int = 0) -> tuple[int, int] | None:
        """Generated (line, column) for an original position (reverse lookup)."""
        if self._reverse is None:
            reverse: dict[str, list[Mapping]] = {}
            for ms in self._lines.values():
                for m in ms:
                    if m.source is not None:
                        reverse.setdefault(m.source, []).append(m)
            for ms in reverse.values():
                ms.sort(key=lambda m: (m.original_line or 0, m.original_column or 0))
            self._reverse = reverse

        resolved = self.match_source(source)
        if resolved is None:
            return None
        candidates = [m for m in self._reverse.get(resolved, ()) if m.original_line == line]
        if not candidates:
            return None
        best = None
        for m in candidates:
            if (m.original_column or 0) <= column:
                best = m
        best = best or candidates[0]
        return best.generated_line, best.generated_column

    def iter_mappings(self):
        """Mappings in generated order."""
        for line in sorted(self._lines):
            yield from self._lines[line]

    def match_source(self, name: str) -> str | None:
        if name in self._content or name in self.sources:
            return name
        for src in self.sources:
            if src.endswith("/" + name.lstrip("./")) or src.endswith(name):
                return src
        return None

    def source_content(self, name: str) -> str | None:
        resolved = self.match_source(name)
        return self._content.get(resolved) if resolved else None


__all__ = ["Mapping", "SourceMap", "SourceMapError", "decode_vlq", "encode_vlq"]
