from __future__ import annotations


def test_detects_every_matching_framework() -> None:
    from mcp_servers.websee.frameworks import Capabilities, detect_frameworks

    caps = Capabilities.from_page(
        {
            "globalHook": {"react": True, "vue": False},
            "internalInstance": {"angular": True},
            "devtools": {},
            "versions": {"react": "18.2.0"},
        }
    )
    assert detect_frameworks(caps) == frozenset({"react", "angular"})
    assert caps.versions == {"react": "18.2.0"}


def test_unknown_only_when_nothing_matched() -> None:
    from mcp_servers.websee.frameworks import Capabilities, detect_frameworks

    assert detect_frameworks(Capabilities()) == frozenset({"unknown"})
    assert detect_frameworks(Capabilities.from_page({"internalInstance": {"vue": True}})) == frozenset({"vue"})


def test_capability_flags_require_strict_true() -> None:
    from mcp_servers.websee.frameworks import Capabilities, detect_frameworks

    caps = Capabilities.from_page({"globalHook": {"react": "yes", "vue": 1}, "devtools": "nope"})
    assert caps.global_hook == {"react": False, "vue": False}
    assert caps.devtools == {}
    assert detect_frameworks(caps) == frozenset({"unknown"})
    assert Capabilities.from_page(None) == Capabilities()


def test_angular_detected_through_devtools_probe() -> None:
    from mcp_servers.websee.frameworks import Capabilities, detect_frameworks

    assert detect_frameworks(Capabilities(devtools={"angular": True})) == frozenset({"angular"})


def test_classify_hook_shapes() -> None:
    from mcp_servers.websee.frameworks import EffectHook, StateHook, UnknownHook, classify_hook

    state = classify_hook({"hasQueue": True, "hasSetter": True, "value": [1, 2]}, 4)
    assert isinstance(state, StateHook)
    assert state.index == 4
    assert state.to_dict() == {"kind": "state", "index": 4, "value": [1, 2], "hasSetter": True}

    # A queue without a dispatcher is not state.
    assert isinstance(classify_hook({"hasQueue": True, "value": 1}), UnknownHook)

    effect = classify_hook({"index": 2, "effect": True, "deps": None})
    assert isinstance(effect, EffectHook)
    assert effect.deps is None
    assert effect.to_dict()["flavor"] == "effect"

    unknown = classify_hook({"index": 1, "value": "x"})
    assert unknown.to_dict() == {"kind": "unknown", "index": 1, "value": "x"}
