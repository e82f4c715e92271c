"""Framework detection and hook classification.

Detection is polymorphic over the capability probes the page reports; every
detector that matches contributes, so a page running React and Angular side by
side yields both.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Framework = Literal["react", "vue", "angular", "unknown"]


@dataclass(frozen=True, slots=True)
class Capabilities:
    global_hook: dict[str, bool] = field(default_factory=dict)
    internal_instance: dict[str, bool] = field(default_factory=dict)
    devtools: dict[str, bool] = field(default_factory=dict)
    versions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_page(cls, raw: Any) -> Capabilities:
        if not isinstance(raw, dict):
            return cls()

        def flags(key: str) -> dict[str, bool]:
            value = raw.get(key)
            return {str(k): v is True for k, v in value.items()} if isinstance(value, dict) else {}

        versions = raw.get("versions")
        return cls(
            global_hook=flags("globalHook"),
            internal_instance=flags("internalInstance"),
            devtools=flags("devtools"),
            versions={str(k): str(v) for k, v in versions.items()} if isinstance(versions, dict) else {},
        )


class FrameworkDetector:
    framework: Framework = "unknown"

    def matches(self, caps: Capabilities) -> bool:
        raise NotImplementedError


class ReactDetector(FrameworkDetector):
    framework: Framework = "react"

    def matches(self, caps: Capabilities) -> bool:
        return bool(caps.global_hook.get("react") or caps.internal_instance.get("react"))


class VueDetector(FrameworkDetector):
    framework: Framework = "vue"

    def matches(self, caps: Capabilities) -> bool:
        return bool(caps.global_hook.get("vue") or caps.internal_instance.get("vue"))


class AngularDetector(FrameworkDetector):
    framework: Framework = "angular"

    def matches(self, caps: Capabilities) -> bool:
        return bool(caps.devtools.get("angular") or caps.internal_instance.get("angular"))


class UnknownDetector(FrameworkDetector):
    framework: Framework = "unknown"

    def matches(self, caps: Capabilities) -> bool:
        return True


DETECTORS: tuple[FrameworkDetector, ...] = (ReactDetector(), VueDetector(), AngularDetector(), UnknownDetector())


def detect_frameworks(caps: Capabilities, detectors: tuple[FrameworkDetector, ...] = DETECTORS) -> frozenset[str]:
    """All matching frameworks, tried in priority order; `unknown` only alone."""
    found: list[str] = []
    for detector in detectors:
        if isinstance(detector, UnknownDetector):
            if not found and detector.matches(caps):
                found.append(detector.framework)
            continue
        if detector.matches(caps):
            found.append(detector.framework)
    return frozenset(found)


# ── hooks ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class StateHook:
    index: int
    value: Any
    has_setter: bool = True

    kind = "state"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "index": self.index, "value": self.value, "hasSetter": self.has_setter}


@dataclass(frozen=True, slots=True)
class EffectHook:
    index: int
    value: Any
    deps: tuple[Any, ...] | None
    effect: bool = True

    kind = "effect"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "index": self.index,
            "value": self.value,
            "deps": list(self.deps) if self.deps is not None else None,
            "flavor": "effect" if self.effect else "memo",
        }


@dataclass(frozen=True, slots=True)
class UnknownHook:
    index: int
    value: Any
    hint: str | None = None

    kind = "unknown"

    def to_dict(self) -> dict[str, Any]:
        out = {"kind": self.kind, "index": self.index, "value": self.value}
        if self.hint:
            out["hint"] = self.hint
        return out


Hook = StateHook | EffectHook | UnknownHook


def classify_hook(raw: dict[str, Any], fallback_index: int = 0) -> Hook:
    """Classify a page-reported hook entry by its runtime shape."""
    index = raw.get("index")
    index = index if isinstance(index, int) else fallback_index
    value = raw.get("value")
    if raw.get("hasQueue") and raw.get("hasSetter"):
        return StateHook(index, value)
    deps = raw.get("deps")
    if raw.get("effect") or raw.get("memo"):
        return EffectHook(index, value, tuple(deps) if isinstance(deps, list) else None, effect=bool(raw.get("effect")))
    return UnknownHook(index, value, "ref" if raw.get("ref") else None)


__all__ = [
    "AngularDetector",
    "Capabilities",
    "DETECTORS",
    "EffectHook",
    "Framework",
    "FrameworkDetector",
    "Hook",
    "ReactDetector",
    "StateHook",
    "UnknownDetector",
    "UnknownHook",
    "VueDetector",
    "classify_hook",
    "detect_frameworks",
]
