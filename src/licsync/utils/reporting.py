"""
Reporting helpers (table or JSON) for reconciliation results.

`print_rows` keeps only the columns that carry information and produces a
compact table for the terminal. JSON output is meant for machines.
"""
from __future__ import annotations

import json
import sys
from typing import Any, Dict, List, TextIO

_CANDIDATES = ["user", "sku", "result", "action", "disabled", "error"]
_MANDATORY = {"user", "result"}
_SUMMARY_ORDER = ["added", "updated", "removed", "unchanged", "planned", "error"]


def summarize_counts(counts: Dict[str, int]) -> str:
    """Stable ``key=value`` summary, known statuses first."""
    keys = _SUMMARY_ORDER + sorted(k for k in counts if k not in _SUMMARY_ORDER)
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in keys)


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    r = dict(row)
    err = r.get("error")
    r["error"] = str(err).strip()[:160] if err else ""
    return r


def print_rows(rows: List[Dict[str, Any]], fmt: str = "table", out: TextIO | None = None) -> None:
    """Render result rows as a table or JSON.

    Args:
        rows: Result rows (user, sku, result, action, disabled, error).
        fmt: Either ``"table"`` (default) or ``"json"``.
        out: Stream to write to (stdout by default).
    """
    out = out or sys.stdout
    norm_rows = [_normalize_row(r) for r in rows]

    if fmt == "json":
        out.write(json.dumps(norm_rows, indent=2) + "\n")
        return
    if not norm_rows:
        out.write("(no results)\n")
        return

    def _present(v) -> bool:
        return not (v is None or v == "" or v == [])

    cols: List[str] = [
        c for c in _CANDIDATES
        if c in _MANDATORY or any(_present(r.get(c)) for r in norm_rows)
    ]

    def _fmt(v) -> str:
        s = "" if v is None else str(v)
        return s or "-"

    widths = {c: len(c) for c in cols}
    for r in norm_rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c))))

    out.write("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |\n")
    out.write("| " + " | ".join("-" * widths[c] for c in cols) + " |\n")
    for r in norm_rows:
        out.write("| " + " | ".join(_fmt(r.get(c)).ljust(widths[c]) for c in cols) + " |\n")
