"""
Input loader: read the reconciliation file and turn it into typed rows.

Lifecycle:
  load_table -> validate_header (fatal) -> parse_rows (row-level errors kept)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..utils.validators import (
    ValidationError,
    feature_columns,
    parse_cell,
    require_catalog_match,
    require_columns,
)
from .catalog import FIXED_COLUMNS, LOCATION_COLUMN, USER_COLUMN, LicenseCatalog, is_intune


@dataclass(frozen=True)
class DesiredRow:
    """One record of the input file.

    ``features`` maps ``SKU:Plan`` to True (enable), False (disable) or None
    (unspecified). Intune columns are already dropped.
    """
    index: int
    upn: str
    usage_location: str
    features: Dict[str, Optional[bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class RowError:
    index: int
    upn: str
    error: str


def load_table(path: str) -> pd.DataFrame:
    """Load a CSV (or first XLSX sheet) with every cell as a string.

    Raises:
        FileNotFoundError: if *path* does not exist.
        ValidationError: if the file cannot be parsed.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Input file not found: {path}")
    try:
        if p.suffix.lower() in (".xlsx", ".xlsm"):
            df = pd.read_excel(p, sheet_name=0, dtype=str, keep_default_na=False, engine="openpyxl")
        else:
            df = pd.read_csv(p, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as exc:
        raise ValidationError(f"Failed to read {path}: {exc}") from exc
    df.columns = [str(c).strip() for c in df.columns]
    return df.fillna("")


def validate_header(columns: Sequence[str], catalog: LicenseCatalog, mode: str = "pair") -> None:
    """Fatal header checks, in order: user column, location column, catalog match."""
    require_columns(columns, FIXED_COLUMNS)
    require_catalog_match(columns, catalog, mode)


def parse_rows(df: pd.DataFrame, logger: logging.LoggerAdapter) -> Tuple[List[DesiredRow], List[RowError]]:
    """Build typed rows. A bad cell or a blank principal name rejects only that row."""
    cols = [c for c in feature_columns(list(df.columns)) if not is_intune(c)]
    rows: List[DesiredRow] = []
    errors: List[RowError] = []

    for idx, rec in enumerate(df.to_dict(orient="records")):
        upn = str(rec.get(USER_COLUMN, "")).strip()
        if not upn:
            errors.append(RowError(idx, "", f"row {idx + 2}: empty {USER_COLUMN}"))
            logger.error("Row %d skipped: empty %s", idx + 2, USER_COLUMN)
            continue
        try:
            features = {c: parse_cell(rec.get(c), c) for c in cols}
        except ValidationError as exc:
            errors.append(RowError(idx, upn, str(exc)))
            logger.error("Row %d (%s) skipped: %s", idx + 2, upn, exc)
            continue
        rows.append(DesiredRow(
            index=idx,
            upn=upn,
            usage_location=str(rec.get(LOCATION_COLUMN, "")).strip(),
            features=features,
        ))

    logger.info("Parsed %d row(s), %d rejected", len(rows), len(errors))
    return rows, errors
