"""Read-only view over a pre-parsed build manifest (webpack stats / vite manifest)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class BuildModule:
    id: str
    name: str
    size: int
    chunks: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "size": self.size, "chunks": list(self.chunks)}


def _module_from(raw: dict[str, Any]) -> BuildModule:
    reasons = []
    for reason in raw.get("reasons") or raw.get("dependencies") or []:
        if isinstance(reason, dict):
            name = reason.get("moduleName") or reason.get("module") or reason.get("name")
        else:
            name = reason
        if name:
            reasons.append(str(name))
    size = raw.get("size")
    return BuildModule(
        id=str(raw.get("id") if raw.get("id") is not None else raw.get("name")),
        name=str(raw.get("name") or raw.get("id") or ""),
        size=int(size) if isinstance(size, (int, float)) else 0,
        chunks=tuple(str(c) for c in raw.get("chunks") or []),
        reasons=tuple(reasons),
    )


def _is_vite(data: dict[str, Any]) -> bool:
    # Vite: {"src/main.ts": {"file": "assets/main-abc.js", "imports": [...]}, ...}
    return bool(data) and "modules" not in data and all(
        isinstance(v, dict) and isinstance(v.get("file"), str) for v in data.values()
    )


def _vite_modules(data: dict[str, Any]) -> tuple[list[BuildModule], list[dict[str, Any]], dict[str, Any]]:
    importers: dict[str, list[str]] = {}
    for key, chunk in data.items():
        for dep in list(chunk.get("imports") or []) + list(chunk.get("dynamicImports") or []):
            importers.setdefault(str(dep), []).append(key)
    modules = []
    chunks = []
    entrypoints = {}
    for key, chunk in data.items():
        modules.append(
            BuildModule(
                id=key,
                name=str(chunk.get("src") or key),
                size=0,
                chunks=(chunk["file"],),
                reasons=tuple(importers.get(key, ())),
            )
        )
        chunks.append(
            {
                "id": chunk["file"],
                "names": [str(chunk.get("name") or key)],
                "imports": list(chunk.get("imports") or []),
                "dynamicImports": list(chunk.get("dynamicImports") or []),
                "css": list(chunk.get("css") or []),
            }
        )
        if chunk.get("isEntry"):
            entrypoints[key] = {"chunks": [chunk["file"]]}
    return modules, chunks, entrypoints


class BuildManifest:
    def __init__(self, data: dict[str, Any] | None = None) -> None:
        data = data if isinstance(data, dict) else {}
        if _is_vite(data):
            self.kind = "vite"
            self.modules, self.chunks, self.entrypoints = _vite_modules(data)
        else:
            self.kind = str(data.get("type") or ("webpack" if "modules" in data else "unknown"))
            self.modules = [_module_from(m) for m in data.get("modules") or [] if isinstance(m, dict)]
            self.chunks = [c for c in data.get("chunks") or [] if isinstance(c, dict)]
            self.entrypoints = data.get("entrypoints") if isinstance(data.get("entrypoints"), dict) else {}
        self._index: dict[str, BuildModule] = {}
        for module in self.modules:
            self._index.setdefault(module.name, module)
            self._index.setdefault(module.id, module)

    def find_module(self, path: str) -> BuildModule | None:
        """Exact name/id, then `./`-relative, then substring either way."""
        if not path:
            return None
        hit = self._index.get(path)
        if hit is not None:
            return hit
        trimmed = path.split("://", 1)[-1].lstrip("/")
        for candidate in (trimmed, "./" + trimmed):
            hit = self._index.get(candidate)
            if hit is not None:
                return hit
        for module in self.modules:
            key = module.name
            if len(key) >= 3 and (key.lstrip("./") in path or trimmed in key):
                return module
        return None

    def module_size(self, path: str) -> int | None:
        module = self.find_module(path)
        return module.size if module else None

    def dependents_of(self, path: str) -> list[str]:
        """Modules that import `path` (webpack `reasons`, vite `imports`/`dynamicImports`)."""
        module = self.find_module(path)
        return list(module.reasons) if module else []

    def chunk_for(self, path: str) -> dict[str, Any] | None:
        module = self.find_module(path)
        if module is None:
            return None
        for chunk in self.chunks:
            if str(chunk.get("id")) in module.chunks:
                return chunk
        return None

    def summary(self) -> dict[str, Any]:
        largest = sorted(self.modules, key=lambda m: m.size, reverse=True)[:10]
        return {
            "type": self.kind,
            "totalModules": len(self.modules),
            "totalChunks": len(self.chunks),
            "totalSize": sum(m.size for m in self.modules),
            "largestModules": [m.to_dict() for m in largest],
            "entrypoints": sorted(self.entrypoints),
        }


__all__ = ["BuildManifest", "BuildModule"]
