"""Line-oriented symbol extraction over original sources (`sourcesContent`).

Regex-based and best-effort: good enough to answer "where is X defined" and
"what does this module export/import" for ES modules and TypeScript, without a
JavaScript parser.
"""

from __future__ import annotations

import re
from typing import Any

DEFINITION_CONTEXT_LINES = 6

_EXPORT_DECL_RE = re.compile(
    r"\bexport\s+(?P<default>default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?P<kind>function\*?|class|const|let|var|type|interface|enum)\s+(?P<name>[\w$]+)"
)
_EXPORT_DEFAULT_RE = re.compile(r"\bexport\s+default\s+(?!function\b|class\b|async\b)(?P<name>[\w$]+)")
_EXPORT_LIST_RE = re.compile(r"\bexport\s+(?:type\s+)?\{(?P<names>[^}]*)\}")
_IMPORT_RE = re.compile(
    r"\bimport\s+(?:type\s+)?(?:(?P<default>[\w$]+)\s*,?\s*)?(?:\{(?P<names>[^}]*)\}|\*\s+as\s+(?P<ns>[\w$]+))?"
    r"\s*from\s+['\"](?P<source>[^'\"]+)['\"]"
)
_TYPE_RES = (
    ("type", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?type\s+([\w$]+)\s*(?:<[^=]*>)?\s*=")),
    ("interface", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?interface\s+([\w$]+)")),
    ("enum", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+([\w$]+)")),
)


def _split_names(raw: str) -> list[str]:
    """Binding names from `{ a, b as c }`; an alias wins over the original name."""
    out = []
    for part in raw.split(","):
        part = part.strip()
        if part.startswith("type "):
            part = part[5:].strip()
        if not part:
            continue
        local, _, alias = part.partition(" as ")
        out.append((alias or local).strip())
    return out


def extract_exports(content: str) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        m = _EXPORT_DECL_RE.search(line)
        if m:
            kind = "default" if m.group("default") else m.group("kind").rstrip("*")
            found.append({"name": m.group("name"), "type": kind, "line": lineno})
            continue
        m = _EXPORT_DEFAULT_RE.search(line)
        if m:
            found.append({"name": m.group("name"), "type": "default", "line": lineno})
            continue
        m = _EXPORT_LIST_RE.search(line)
        if m:
            for name in _split_names(m.group("names")):
                found.append({"name": name, "type": "named", "line": lineno})
    return found


def extract_imports(content: str) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        m = _IMPORT_RE.search(line)
        if not m:
            continue
        source = m.group("source")
        if m.group("default"):
            found.append({"name": m.group("default"), "from": source, "line": lineno, "kind": "default"})
        if m.group("ns"):
            found.append({"name": m.group("ns"), "from": source, "line": lineno, "kind": "namespace"})
        if m.group("names") is not None:
            for name in _split_names(m.group("names")):
                found.append({"name": name, "from": source, "line": lineno, "kind": "named"})
    return found


def extract_types(content: str) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        for kind, regex in _TYPE_RES:
            m = regex.match(line)
            if m:
                found.append({"name": m.group(1), "kind": kind, "line": lineno})
                break
    return found


def definition_patterns(name: str) -> tuple[re.Pattern[str], ...]:
    n = re.escape(name)
    return (
        re.compile(rf"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+{n}\s*[(<]"),
        re.compile(rf"^\s*(?:export\s+)?(?:const|let|var)\s+{n}\s*(?::[^=]+)?="),
        re.compile(rf"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+{n}\b"),
    )


def find_definition_in(content: str, name: str) -> tuple[int, str] | None:
    """(1-based line, code excerpt) of the first definition of `name`."""
    patterns = definition_patterns(name)
    lines = content.splitlines()
    for idx, line in enumerate(lines):
        if any(p.search(line) for p in patterns):
            return idx + 1, "\n".join(lines[idx : idx + DEFINITION_CONTEXT_LINES])
    return None


__all__ = [
    "definition_patterns",
    "extract_exports",
    "extract_imports",
    "extract_types",
    "find_definition_in",
]
