"""Process-wide component health behind the ``/ready`` check.

``runtime`` and ``discord`` gate readiness. ``identity`` (the Postgres pool)
is reported for operators only; without it account lookups and karma degrade
but onboarding keeps running.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

GATING = frozenset({"runtime", "discord"})


@dataclass
class ComponentState:
    ok: bool
    ts: float = field(default_factory=time.time)


_state: dict[str, ComponentState] = {}


def required_components() -> frozenset[str]:
    return GATING


def set_component(name: str, ok: bool) -> None:
    _state[name] = ComponentState(ok=bool(ok))


def components_snapshot() -> dict[str, dict[str, float | bool]]:
    """Every reported component plus any gating one not yet heard from."""

    snapshot = {name: {"ok": item.ok, "ts": item.ts} for name, item in _state.items()}
    for name in GATING - snapshot.keys():
        snapshot[name] = {"ok": False, "ts": 0.0}
    return snapshot


def overall_ready() -> bool:
    return all(name in _state and _state[name].ok for name in GATING)


def reset() -> None:
    _state.clear()
