"""
Tenant license catalog and the CSV template generator.

A column in the reconciliation CSV is named ``<SKU>:<Plan>`` where SKU is the
tenant's ``skuPartNumber`` and Plan a ``servicePlanName``. The catalog turns
those names into the GUIDs Graph expects.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .graph_client import GraphClient, GraphError

USER_COLUMN = "UserPrincipalName"
LOCATION_COLUMN = "UsageLocation"
FIXED_COLUMNS: Tuple[str, str] = (USER_COLUMN, LOCATION_COLUMN)

# Plans carrying this marker are never reconciled
INTUNE_MARKER = "INTUNE_O365"


class CatalogError(RuntimeError):
    """The tenant catalog cannot be fetched."""


class TemplateError(RuntimeError):
    """The template file cannot be written (or already exists)."""


def is_intune(name: str) -> bool:
    return INTUNE_MARKER in name


def column_name(sku: str, plan: str) -> str:
    return f"{sku}:{plan}"


def split_column(column: str) -> Tuple[str, str]:
    """Split ``SKU:Plan`` on the last colon (SKU names may carry a prefix)."""
    sku, sep, plan = column.rpartition(":")
    if not sep:
        return "", column
    return sku, plan


@dataclass
class CatalogSku:
    """One SKU of the tenant and its feature plans (name -> plan GUID)."""
    sku_id: str
    part_number: str
    plans: Dict[str, str] = field(default_factory=dict)

    def plan_id(self, name: str) -> str:
        return self.plans[name]


@dataclass
class LicenseCatalog:
    """Read-only, per-run view of the tenant's SKUs, in service order."""
    skus: Dict[str, CatalogSku] = field(default_factory=dict)

    @classmethod
    def from_graph(cls, items: Iterable[Dict[str, Any]]) -> "LicenseCatalog":
        skus: Dict[str, CatalogSku] = {}
        for it in items:
            part = str(it.get("skuPartNumber") or "")
            if not part:
                continue
            plans: Dict[str, str] = {}
            for p in it.get("servicePlans") or []:
                name = str(p.get("servicePlanName") or "")
                if name:
                    plans[name] = str(p.get("servicePlanId") or "")
            skus[part] = CatalogSku(sku_id=str(it.get("skuId") or ""), part_number=part, plans=plans)
        return cls(skus=skus)

    def __contains__(self, part_number: object) -> bool:
        return part_number in self.skus

    def __iter__(self) -> Iterator[CatalogSku]:
        return iter(self.skus.values())

    def get(self, part_number: str) -> Optional[CatalogSku]:
        return self.skus.get(part_number)

    def columns(self) -> List[str]:
        """All ``SKU:Plan`` pairs, SKU order then plan order as served."""
        return [column_name(s.part_number, p) for s in self for p in s.plans]

    def pair_set(self) -> Set[str]:
        return set(self.columns())

    def plan_set(self) -> Set[str]:
        """Plan names across every SKU, flattened."""
        return {p for s in self for p in s.plans}


def fetch_catalog(client: GraphClient, logger: logging.LoggerAdapter) -> LicenseCatalog:
    """Pull the tenant catalog once for the run.

    Raises:
        CatalogError: when the service call fails.
    """
    try:
        catalog = LicenseCatalog.from_graph(client.list_subscribed_skus())
    except GraphError as exc:
        raise CatalogError(f"Cannot list subscribed SKUs: {exc}") from exc
    logger.info(
        "Loaded tenant catalog: %d SKU(s), %d plan column(s)",
        len(catalog.skus), len(catalog.columns()),
    )
    for sku in catalog:
        logger.debug("SKU %s (%s): %s", sku.part_number, sku.sku_id, ", ".join(sku.plans))
    return catalog


def write_template(catalog: LicenseCatalog, path: str, logger: logging.LoggerAdapter) -> Path:
    """Write a header-only CSV for *catalog*. Never overwrites an existing file.

    Raises:
        TemplateError: when the file exists or cannot be written.
    """
    header = list(FIXED_COLUMNS) + catalog.columns()
    p = Path(path)
    try:
        with p.open("x", encoding="utf-8", newline="") as fh:
            csv.writer(fh).writerow(header)
    except FileExistsError as exc:
        raise TemplateError(f"Template file already exists, not overwriting: {p}") from exc
    except OSError as exc:
        raise TemplateError(f"Cannot write template file {p}: {exc}") from exc
    logger.info("Wrote template with %d column(s) to %s", len(header), p)
    return p
