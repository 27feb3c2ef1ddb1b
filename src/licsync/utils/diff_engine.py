"""
Diff engine for licsync.

Per user and per SKU, decides which single license call (if any) converges
the live state to the desired one. Pure functions only: no I/O, no logging.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Optional, Tuple

Op = Literal["ADD", "REMOVE", "UPDATE", "NOOP"]


@dataclass(frozen=True)
class FeatureState:
    """Desired vs live state of one ``SKU:Plan`` for one user.

    Attributes:
        license: ``SKU:Plan`` column name.
        needed: True (enable), False (disable) or None (unspecified).
        current: live state, True when the plan is provisioned.
    """
    license: str
    needed: Optional[bool]
    current: bool = False

    @property
    def sku(self) -> str:
        return self.license.rpartition(":")[0]

    @property
    def plan(self) -> str:
        return self.license.rpartition(":")[2]

    @property
    def final(self) -> bool:
        return resolve_final(self.needed, self.current)


def resolve_final(needed: Optional[bool], current: bool) -> bool:
    """Unspecified inherits the live value; anything else wins."""
    if needed is None:
        return bool(current)
    return bool(needed)


@dataclass(frozen=True)
class Decision:
    """Outcome for one SKU group of one user.

    Attributes:
        op: ``"ADD"``, ``"REMOVE"``, ``"UPDATE"`` or ``"NOOP"``.
        reason: Human-friendly explanation of the decision.
        sku: SKU part number the decision applies to.
        disabled_plans: plan names to disable (ADD with restrictions / UPDATE).
        held: whether the user currently holds any plan of the SKU.
    """
    op: Op
    reason: str
    sku: str
    disabled_plans: Tuple[str, ...] = ()
    held: bool = False


def group_by_sku(states: Iterable[FeatureState]) -> Dict[str, List[FeatureState]]:
    """Group feature states by SKU, keeping first-seen order."""
    groups: Dict[str, List[FeatureState]] = {}
    for st in states:
        groups.setdefault(st.sku, []).append(st)
    return groups


def decide(sku: str, group: List[FeatureState]) -> Decision:
    """Classify one SKU group. Cases are checked in this order and are exclusive:

    1. full enable   - every final is on and nothing is live  -> ADD, no restrictions
    2. full disable  - every final is off and something is live -> REMOVE
    3. partial       - any live != final -> UPDATE (held) or ADD with disabled plans
    4. no change     -> NOOP
    """
    finals = [st.final for st in group]
    currents = [st.current for st in group]
    held = sum(1 for c in currents if c) > 0

    if group and all(finals) and not any(currents):
        return Decision(op="ADD", reason="Full enable", sku=sku, held=False)

    if group and not any(finals) and held:
        return Decision(op="REMOVE", reason="Full disable", sku=sku, held=True)

    changed = [st.plan for st in group if st.current != st.final]
    if changed:
        disabled = tuple(st.plan for st in group if not st.final)
        if held:
            return Decision(
                op="UPDATE",
                reason=f"Plans differ: {', '.join(changed)}",
                sku=sku,
                disabled_plans=disabled,
                held=True,
            )
        return Decision(
            op="ADD",
            reason=f"Partial enable: {', '.join(changed)}",
            sku=sku,
            disabled_plans=disabled,
            held=False,
        )

    return Decision(op="NOOP", reason="Identical", sku=sku, held=held)


def plan(states: Iterable[FeatureState]) -> List[Decision]:
    """Decide every SKU group of a user's feature table."""
    return [decide(sku, group) for sku, group in group_by_sku(states).items()]
