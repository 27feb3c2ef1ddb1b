"""
Layered configuration for licsync.

Precedence (highest first):
  1) CLI overrides
  2) Environment variables (prefix LICSYNC_, nested via __), after loading `.env`
  3) YAML file (first existing)
  4) Built-in defaults
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


class ConfigError(Exception):
    """Raised when runtime configuration cannot be resolved."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class GraphSection:
    base_url: str = "https://graph.microsoft.com/v1.0"
    authority_host: str = "https://login.microsoftonline.com"
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""   # secret, never logged in clear text
    access_token: str = ""    # secret, pre-acquired bearer token
    scopes: List[str] = field(default_factory=lambda: ["https://graph.microsoft.com/.default"])
    token_cache: str = "~/.licsync/token_cache.json"
    timeout_sec: int = 60
    verify_tls: bool = True

    @property
    def authority(self) -> str:
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"


@dataclass
class InputsSection:
    csv_path: str = "./LicenseInfo.csv"
    template_path: str = "./LicenseTemplate.csv"
    header_match: str = "pair"    # pair | plan


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    graph: GraphSection
    inputs: InputsSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Timestamp-based run identifier (to the second), generated once.
        The random suffix keeps two runs started in the same second apart.
        """
        if not self.app.run_id:
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            self.app.run_id = f"{ts}-{uuid.uuid4().hex[:6]}"
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./licsync.yml",
    os.path.expanduser("~/.config/licsync/config.yml"),
    "/etc/licsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "graph": {
        "base_url": "https://graph.microsoft.com/v1.0",
        "authority_host": "https://login.microsoftonline.com",
        "tenant_id": "",
        "client_id": "",
        "client_secret": "",
        "access_token": "",
        "scopes": ["https://graph.microsoft.com/.default"],
        "token_cache": "~/.licsync/token_cache.json",
        "timeout_sec": 60,
        "verify_tls": True,
    },
    "inputs": {
        "csv_path": "./LicenseInfo.csv",
        "template_path": "./LicenseTemplate.csv",
        "header_match": "pair",
    },
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

HEADER_MATCH_MODES = ("pair", "plan")


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _load_env_file() -> None:
    """Load a `.env` from the working directory tree if there is one."""
    env_path = find_dotenv(usecwd=True) or ""
    if env_path:
        load_dotenv(env_path, override=False)


def _env_to_dict(prefix: str = "LICSYNC_") -> Dict[str, Any]:
    """
    Convert LICSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans, integers and lists in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if key_path[-1:] == ("scopes",) and isinstance(obj, str):
            # env form: space or comma separated
            return [s for s in obj.replace(",", " ").split() if s]
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if key_path[-1:] in [("verify_tls",), ("dry_run",)]:
            return to_bool(obj)
        if key_path[-1:] == ("timeout_sec",):
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"{'.'.join(key_path)} must be an integer, got {obj!r}")
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    graph = cfg.get("graph", {})
    missing = []
    if not graph.get("access_token"):
        if not graph.get("tenant_id"):
            missing.append("graph.tenant_id")
        if not graph.get("client_id"):
            missing.append("graph.client_id")
    if missing:
        raise ConfigError(
            "Missing required configuration: " + ", ".join(missing)
            + ". Set them in licsync.yml or export LICSYNC_GRAPH__TENANT_ID / "
            "LICSYNC_GRAPH__CLIENT_ID (a .env file in the working directory works too)."
        )

    mode = str(cfg.get("inputs", {}).get("header_match", "")).lower()
    if mode not in HEADER_MATCH_MODES:
        raise ConfigError(
            f"inputs.header_match must be one of {', '.join(HEADER_MATCH_MODES)}, got {mode!r}"
        )
    cfg["inputs"]["header_match"] = mode


def _build_section(cls: type, data: Dict[str, Any], name: str) -> Any:
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigError(f"Invalid keys in '{name}' section: {exc}") from exc


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "LICSYNC_",
) -> AppConfig:
    """
    Build an AppConfig from CLI overrides, environment, YAML file and defaults.

    Also performs:
      - `.env` loading (existing environment wins)
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int/list)
      - validation of required fields

    Raises:
        ConfigError: on unreadable files, bad types or missing required keys.
    """
    try:
        file_cfg = _load_first_existing(files)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read configuration file: {exc}") from exc

    _load_env_file()
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    return AppConfig(
        app=_build_section(AppSection, merged.get("app", {}), "app"),
        graph=_build_section(GraphSection, merged.get("graph", {}), "graph"),
        inputs=_build_section(InputsSection, merged.get("inputs", {}), "inputs"),
        logging=_build_section(LoggingSection, merged.get("logging", {}), "logging"),
    )
