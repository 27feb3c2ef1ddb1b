"""
Central logging for licsync.

- One file per run: <base_dir>/<action>_<run_id>.log (DEBUG by default)
- Console mirror through rich: red = error, yellow = warning,
  green = final line, default = info
- Secret redaction: masks tokens/passwords in both msg and % args
- Lines are `<ISO-8601 timestamp> <LEVEL> <message>`
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, MutableMapping, Optional, Tuple

from rich.console import Console
from rich.text import Text


class MaskSecretsFilter(logging.Filter):
    """
    Redact common secrets (bearer tokens, client secrets, passwords) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(client[_-]?secret\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\b(?:access_)?token\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(str(v)) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class RichConsoleHandler(logging.Handler):
    """Mirror log lines to the terminal, colour-coded by severity."""

    def __init__(self, console: Optional[Console] = None, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.console = console or Console(stderr=True, highlight=False)

    @staticmethod
    def style_for(record: logging.LogRecord) -> Optional[str]:
        if getattr(record, "final", False):
            return "green"
        if record.levelno >= logging.ERROR:
            return "red"
        if record.levelno >= logging.WARNING:
            return "yellow"
        return None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            self.console.print(Text(line, style=self.style_for(record) or ""), soft_wrap=True)
        except Exception:
            self.handleError(record)


class RunLogger(logging.LoggerAdapter):
    """
    Logging context for one run. Passed explicitly to every component.

    Unlike the stock adapter, per-call `extra` is merged with the run context
    instead of being discarded.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs

    @property
    def log_path(self) -> str:
        return str((self.extra or {}).get("log_path", ""))

    def final(self, msg: str, *args: Any) -> None:
        """Log the closing line of a run (rendered green on the console)."""
        self.info(msg, *args, extra={"final": True})


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _iso_formatter() -> logging.Formatter:
    return logging.Formatter(fmt="%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z")


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def build_logger(
    *,
    name: str = "licsync",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    console: Optional[Console] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> RunLogger:
    """
    Configure and return the RunLogger for one run.

    Design:
      - Logger `<name>.<action>.<run_id>` owns both sinks (file + console).
      - It does not propagate, so a second run in the same process
        never writes into the first run's file.
    """
    mask = MaskSecretsFilter()
    formatter = _iso_formatter()

    _ensure_dir(base_dir)
    log_path = os.path.abspath(os.path.join(base_dir, f"{action}_{run_id}.log"))

    logger = logging.getLogger(f"{name}.{action}.{run_id}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    # Append-only, flushed on every record by StreamHandler
    fh = logging.FileHandler(log_path, mode="a", encoding="utf-8", delay=False)
    fh.setLevel(_level(file_level, logging.DEBUG))
    fh.setFormatter(formatter)
    fh.addFilter(mask)
    logger.addHandler(fh)

    ch = RichConsoleHandler(console=console, level=_level(console_level, logging.INFO))
    ch.setFormatter(formatter)
    ch.addFilter(mask)
    logger.addHandler(ch)

    adapter = RunLogger(logger, {"run_id": run_id, "action": action, "log_path": log_path, **(extra or {})})
    adapter.debug("Logger initialised (file=%s)", log_path)
    return adapter


def close_logger(logger: RunLogger) -> None:
    """Flush and detach every handler of a run logger."""
    base = logger.logger
    for h in list(base.handlers):
        h.flush()
        base.removeHandler(h)
        h.close()
