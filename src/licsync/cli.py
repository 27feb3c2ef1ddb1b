"""
Command-line interface for licsync.

Usage (examples):
  - Reconcile users from the default ./LicenseInfo.csv:
      licsync

  - Reconcile from another file, plan only:
      licsync --input-file ./data/licenses.csv --dry-run

  - Write a header-only template for this tenant and exit:
      licsync --generate-csv-file --template-file ./LicenseTemplate.csv
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .core.catalog import CatalogError, TemplateError, fetch_catalog, write_template
from .core.config import HEADER_MATCH_MODES, AppConfig, ConfigError, load_config
from .core.graph_client import GraphClient, GraphError
from .core.input_loader import load_table, parse_rows, validate_header
from .core.logging_setup import RunLogger, build_logger, close_logger
from .core.reconciler import ReconcileResult, Reconciler
from .core.session import ConnectionGuardError, GraphSession, ensure_connection
from .utils.reporting import print_rows, summarize_counts
from .utils.validators import ValidationError

EXIT_OK = 0
EXIT_GENERIC_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_SERVICE_ERROR = 4
EXIT_CONNECTION_ERROR = 5
EXIT_INTERRUPTED = 130


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="licsync",
        description="Reconcile Microsoft 365 license assignments against a CSV of desired state",
    )
    p.add_argument(
        "-i", "--input-file", "--InputFilePath",
        dest="input_file", default=None,
        help="Reconciliation CSV/XLSX (default: ./LicenseInfo.csv)",
    )
    p.add_argument(
        "-g", "--generate-csv-file", "--GenerateCSVFile",
        dest="generate", action="store_true",
        help="Write a header-only template for this tenant and exit",
    )
    p.add_argument("--template-file", default=None, help="Template output path (default: ./LicenseTemplate.csv)")
    p.add_argument("--config", default=None, help="YAML configuration file")
    p.add_argument("--dry-run", action="store_true", help="Diff against live state, make no changes")
    p.add_argument(
        "--header-match", choices=list(HEADER_MATCH_MODES), default=None,
        help="Compare input columns to the catalog by SKU:Plan pair (default) or by plan name only",
    )
    p.add_argument("--format", choices=["table", "json"], default="table", help="Result output format")

    # Graph
    p.add_argument("--tenant-id", default=None, help="Directory (tenant) ID")
    p.add_argument("--client-id", default=None, help="Application (client) ID")

    # Logging
    p.add_argument("--logs-dir", default=None, help="Logs directory (default: logs)")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")
    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only flags the user actually passed override lower layers."""
    out: Dict[str, Dict[str, Any]] = {"app": {}, "graph": {}, "inputs": {}, "logging": {}}
    if args.dry_run:
        out["app"]["dry_run"] = True
    for section, key, value in (
        ("graph", "tenant_id", args.tenant_id),
        ("graph", "client_id", args.client_id),
        ("inputs", "csv_path", args.input_file),
        ("inputs", "template_path", args.template_file),
        ("inputs", "header_match", args.header_match),
        ("logging", "base_dir", args.logs_dir),
        ("logging", "console_level", args.console_level),
        ("logging", "file_level", args.file_level),
    ):
        if value is not None:
            out[section][key] = value
    return {k: v for k, v in out.items() if v}


def _fallback_logger(args: argparse.Namespace, action: str) -> RunLogger:
    """Logger for runs whose configuration could not be loaded."""
    return build_logger(
        run_id=datetime.now().strftime("%Y%m%d-%H%M%S"),
        action=action,
        base_dir=args.logs_dir or "logs",
        console_level=args.console_level or "INFO",
        file_level=args.file_level or "DEBUG",
    )


def _finish(logger: RunLogger, code: int) -> int:
    if code == EXIT_OK:
        logger.final("Run completed (log: %s)", logger.log_path)
    else:
        logger.final("Run ended with exit code %d (log: %s)", code, logger.log_path)
    close_logger(logger)
    return code


def _generate(cfg: AppConfig, client: GraphClient, logger: RunLogger) -> int:
    catalog = fetch_catalog(client, logger)
    write_template(catalog, cfg.inputs.template_path, logger)
    return EXIT_OK


def _reconcile(cfg: AppConfig, client: GraphClient, logger: RunLogger, fmt: str) -> int:
    catalog = fetch_catalog(client, logger)

    path = cfg.inputs.csv_path
    df = load_table(path)
    logger.info("Loaded %d input row(s) from %s", len(df), path)
    validate_header(list(df.columns), catalog, cfg.inputs.header_match)
    rows, row_errors = parse_rows(df, logger)

    result = ReconcileResult()
    for e in row_errors:
        result.add({"user": e.upn or f"row {e.index + 2}", "result": "error", "action": "parse", "error": e.error})

    if cfg.app.dry_run:
        logger.info("Dry run: no changes will be made")
    Reconciler(client, catalog, logger, dry_run=cfg.app.dry_run).run(rows, result)

    print_rows(result.rows, fmt)
    logger.info("Summary: %s", summarize_counts(result.counts))
    return EXIT_OK


def _run(args: argparse.Namespace, cfg: AppConfig, logger: RunLogger) -> int:
    session = GraphSession(cfg.graph, logger=logger)
    client = GraphClient(
        cfg.graph.base_url,
        session.token,
        timeout_sec=cfg.graph.timeout_sec,
        verify_tls=cfg.graph.verify_tls,
        logger=logger,
    )
    try:
        ensure_connection(client, session, logger)
        if args.generate:
            return _generate(cfg, client, logger)
        return _reconcile(cfg, client, logger, args.format)
    except ConnectionGuardError as exc:
        logger.error("Cannot connect to the directory service: %s", exc)
        return EXIT_CONNECTION_ERROR
    except TemplateError as exc:
        logger.error("Template generation failed: %s", exc)
        return EXIT_VALIDATION_ERROR
    except CatalogError as exc:
        logger.error("Catalog error: %s", exc)
        return EXIT_SERVICE_ERROR
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        return EXIT_VALIDATION_ERROR
    except ValidationError as exc:
        logger.error("Validation error: %s", exc)
        return EXIT_VALIDATION_ERROR
    except GraphError as exc:
        logger.error("Service error: %s", exc)
        return EXIT_SERVICE_ERROR
    except KeyboardInterrupt:
        logger.error("Interrupted; changes already applied are not rolled back")
        return EXIT_INTERRUPTED
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return EXIT_GENERIC_ERROR


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    action = "generate" if args.generate else "reconcile"

    files = (args.config,) if args.config else None
    try:
        if files and not os.path.isfile(args.config):
            raise ConfigError(f"Configuration file not found: {args.config}")
        cfg = load_config(_cli_overrides(args), files=files) if files else load_config(_cli_overrides(args))
    except ConfigError as exc:
        logger = _fallback_logger(args, action)
        logger.error("Configuration error: %s", exc)
        return _finish(logger, EXIT_CONFIG_ERROR)

    logger = build_logger(
        run_id=cfg.run_id,
        action=action,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )
    logger.info("Starting licsync %s (dry_run=%s)", action, cfg.app.dry_run)
    return _finish(logger, _run(args, cfg, logger))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
