"""Reconciler, per user: desired table -> live state -> diff -> apply -> report.

Users are processed one at a time and independently. A failing lookup or
call is recorded as an error row and the run moves on; nothing already
applied is rolled back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.diff_engine import Decision, FeatureState, plan
from .catalog import CatalogSku, LicenseCatalog, column_name, is_intune
from .graph_client import DirectoryUser, GraphClient, GraphError, UserNotFoundError
from .input_loader import DesiredRow
from .session import AuthError, NoSessionError


@dataclass
class ReconcileResult:
    """Aggregate result for a run."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def any_error(self) -> bool:
        return bool(self.counts.get("error"))

    def add(self, row: Dict[str, Any]) -> None:
        self.rows.append(row)
        key = row.get("result", "")
        self.counts[key] = self.counts.get(key, 0) + 1


_RESULT_BY_OP = {"ADD": "added", "REMOVE": "removed", "UPDATE": "updated", "NOOP": "unchanged"}

# Per-user call failures, token refresh included
_CALL_ERRORS = (GraphError, AuthError, NoSessionError)


class Reconciler:
    """Converge each user's license assignments to the desired rows.

    Args:
        client: Graph client used for reads and mutations.
        catalog: Tenant catalog fetched for this run.
        logger: Run logger.
        dry_run: Diff against live state but do not issue mutation calls.
    """

    def __init__(
        self,
        client: GraphClient,
        catalog: LicenseCatalog,
        logger: logging.LoggerAdapter,
        *,
        dry_run: bool = False,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.log = logger
        self.dry_run = dry_run

    # ----- building the feature table -------------------------------------
    @staticmethod
    def desired_table(row: DesiredRow) -> Dict[str, FeatureState]:
        return {
            col: FeatureState(license=col, needed=needed, current=False)
            for col, needed in row.features.items()
            if not is_intune(col)
        }

    @staticmethod
    def apply_live_state(table: Dict[str, FeatureState], user: DirectoryUser) -> Dict[str, FeatureState]:
        """Mark as current every table entry the user holds in an enabled state."""
        out = dict(table)
        for sku in user.skus:
            for p in sku.plans:
                if is_intune(p.name) or not p.enabled:
                    continue
                col = column_name(sku.part_number, p.name)
                st = out.get(col)
                if st is not None:
                    out[col] = FeatureState(license=st.license, needed=st.needed, current=True)
        return out

    # ----- pipeline -------------------------------------------------------
    def run(self, rows: List[DesiredRow], result: Optional[ReconcileResult] = None) -> ReconcileResult:
        result = result if result is not None else ReconcileResult()
        for row in rows:
            self.reconcile_user(row, result)
        return result

    def reconcile_user(self, row: DesiredRow, result: ReconcileResult) -> None:
        upn = row.upn
        table = self.desired_table(row)

        try:
            user = self.client.get_user(upn)
        except UserNotFoundError:
            self.log.error("User %s not found in the directory; skipping", upn)
            result.add({"user": upn, "result": "error", "action": "lookup", "error": "user not found"})
            return
        except _CALL_ERRORS as exc:
            self.log.error("Lookup of %s failed: %s", upn, exc)
            result.add({"user": upn, "result": "error", "action": "lookup", "error": str(exc)})
            return

        self.log.info("Processing %s (usage location %s)", upn, user.usage_location or "unset")
        self._sync_usage_location(row, user, result)

        table = self.apply_live_state(table, user)
        for decision in plan(table.values()):
            self._apply(upn, decision, result)

    def _sync_usage_location(self, row: DesiredRow, user: DirectoryUser, result: ReconcileResult) -> None:
        wanted = row.usage_location
        if not wanted or wanted == user.usage_location:
            return
        entry = {
            "user": row.upn,
            "action": f"usage location {user.usage_location or '-'} -> {wanted}",
        }
        if self.dry_run:
            self.log.info("[dry-run] Would set usage location of %s to %s", row.upn, wanted)
            result.add({**entry, "result": "planned"})
            return
        try:
            self.client.set_usage_location(row.upn, wanted)
        except _CALL_ERRORS as exc:
            self.log.error("Setting usage location of %s to %s failed: %s", row.upn, wanted, exc)
            result.add({**entry, "result": "error", "error": str(exc)})
            return
        self.log.info("Set usage location of %s to %s", row.upn, wanted)
        result.add({**entry, "result": "updated"})

    @staticmethod
    def _disabled_plan_ids(sku: CatalogSku, decision: Decision) -> List[str]:
        return [sku.plan_id(p) for p in decision.disabled_plans]

    def _apply(self, upn: str, decision: Decision, result: ReconcileResult) -> None:
        entry = {
            "user": upn,
            "sku": decision.sku,
            "action": decision.reason,
            "disabled": ", ".join(decision.disabled_plans),
        }
        if decision.op == "NOOP":
            self.log.debug("%s / %s: no change", upn, decision.sku)
            result.add({**entry, "result": "unchanged"})
            return

        desc = self._describe(decision)
        if self.dry_run:
            self.log.info("[dry-run] Would %s for %s", desc, upn)
            result.add({**entry, "result": "planned"})
            return

        try:
            sku = self.catalog.get(decision.sku)
            if sku is None:
                raise KeyError(f"SKU {decision.sku} is not in the tenant catalog")
            if decision.op == "REMOVE":
                self.client.remove_sku(upn, sku.sku_id)
            elif decision.op == "UPDATE":
                self.client.update_sku_options(upn, sku.sku_id, self._disabled_plan_ids(sku, decision))
            else:
                self.client.add_sku(upn, sku.sku_id, self._disabled_plan_ids(sku, decision))
        except _CALL_ERRORS + (KeyError,) as exc:
            self.log.error("Failed to %s for %s: %s", desc, upn, exc)
            result.add({**entry, "result": "error", "error": str(exc)})
            return

        self.log.info("%s for %s", desc[0].upper() + desc[1:], upn)
        result.add({**entry, "result": _RESULT_BY_OP[decision.op]})

    @staticmethod
    def _describe(decision: Decision) -> str:
        disabled = ", ".join(decision.disabled_plans)
        if decision.op == "REMOVE":
            return f"remove {decision.sku}"
        if decision.op == "UPDATE":
            return f"update {decision.sku} options (disabled: {disabled or 'none'})"
        if decision.disabled_plans:
            return f"add {decision.sku} (disabled: {disabled})"
        return f"add {decision.sku}"
