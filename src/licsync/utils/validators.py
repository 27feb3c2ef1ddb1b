"""
Input validators (required columns, catalog match, cell values).
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Set

from ..core.catalog import FIXED_COLUMNS, LicenseCatalog, split_column


class ValidationError(Exception):
    """Raised when the input file does not match what the run requires."""


def require_columns(columns: Sequence[str], required: Iterable[str], context: str | None = None) -> None:
    """Ensure every required column is present, checked in the given order.

    Raises
    ------
    ValidationError
        On the first missing column.
    """
    prefix = f"{context}: " if context else ""
    for c in required:
        if c not in columns:
            raise ValidationError(f"{prefix}Missing required column: {c}")


def feature_columns(columns: Sequence[str]) -> List[str]:
    """Every column except the two fixed ones, in file order."""
    return [c for c in columns if c not in FIXED_COLUMNS]


def _describe(diff: Set[str], limit: int = 10) -> str:
    items = sorted(diff)
    out = ", ".join(items[:limit])
    if len(items) > limit:
        out += f", ... (+{len(items) - limit} more)"
    return out


def require_catalog_match(columns: Sequence[str], catalog: LicenseCatalog, mode: str = "pair") -> None:
    """Ensure the feature columns are set-equal to the tenant catalog.

    ``mode="pair"`` compares full ``SKU:Plan`` names. ``mode="plan"`` compares
    only the plan part, flattened across SKUs, so ``WrongSku:PlanX`` passes as
    long as some real SKU has ``PlanX``.

    Raises
    ------
    ValidationError
        Listing what the file has in excess and what it lacks.
    """
    cols = feature_columns(columns)
    if mode == "plan":
        have = {split_column(c)[1] for c in cols}
        want = catalog.plan_set()
        unit = "plan"
    else:
        have = set(cols)
        want = catalog.pair_set()
        unit = "SKU:Plan column"

    if have == want:
        return
    parts = []
    extra = have - want
    missing = want - have
    if extra:
        parts.append(f"unknown {unit}(s): {_describe(extra)}")
    if missing:
        parts.append(f"missing {unit}(s): {_describe(missing)}")
    raise ValidationError("Input columns do not match the tenant catalog; " + "; ".join(parts))


_TRUE = {"1", "1.0"}
_FALSE = {"0", "0.0"}


def parse_cell(value: object, column: str) -> Optional[bool]:
    """Map a feature cell to enable (True), disable (False) or unspecified (None)."""
    s = "" if value is None else str(value).strip()
    if s == "" or s.lower() == "nan":
        return None
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValidationError(f"Invalid value {s!r} in column {column} (expected 1, 0 or empty)")
