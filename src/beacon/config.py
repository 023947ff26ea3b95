"""Configuration loading and merging for Beacon."""

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml


DEFAULT_PORT = 42069


@dataclass
class BeaconConfig:
    # HTTP API
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_requests: bool = True
    cors_allow_origin: Optional[str] = "*"

    # Entity store (any SQLAlchemy URL; sqlite or postgresql, bare
    # postgresql:// URLs use the psycopg 3 driver)
    database_url: str = "sqlite:///beacon.db"
    echo_sql: bool = False
    sqlite_busy_timeout: float = 30.0

    # Liveness sweeper, both in seconds
    sweep_interval: float = 3600
    stale_after: float = 3600


# Durations may be given as seconds or with a unit suffix, e.g. "90s", "30m", "1h"
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_FIELDS = {"sweep_interval", "stale_after"}

# Environment variables consulted by apply_env
ENV_VARS = {
    "BEACON_HOST": "host",
    "BEACON_PORT": "port",
    "BEACON_DATABASE_URL": "database_url",
    "BEACON_SWEEP_INTERVAL": "sweep_interval",
    "BEACON_STALE_AFTER": "stale_after",
    "BEACON_LOG_REQUESTS": "log_requests",
    "BEACON_CORS_ALLOW_ORIGIN": "cors_allow_origin",
}


def parse_duration(value) -> float:
    """Convert a duration (number of seconds or "30m"-style string) to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value).lower())
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def _coerce(name: str, value):
    """Convert a raw YAML/env value to the type of the named field."""
    if name in _DURATION_FIELDS:
        return parse_duration(value)
    if name in ("port",):
        return int(value)
    if name == "sqlite_busy_timeout":
        return float(value)
    if name in ("log_requests", "echo_sql"):
        return _parse_bool(value)
    if name == "cors_allow_origin" and value in ("", None):
        return None
    return value


def load_config(path: str | Path) -> BeaconConfig:
    """Load a BeaconConfig from a YAML file. Unknown keys are ignored."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")

    valid_fields = {f.name for f in fields(BeaconConfig)}
    filtered = {k: _coerce(k, v) for k, v in data.items() if k in valid_fields}
    return BeaconConfig(**filtered)


def apply_env(config: BeaconConfig, environ: Optional[Mapping[str, str]] = None) -> BeaconConfig:
    """Overlay BEACON_* environment variables onto *config*."""
    if environ is None:
        environ = os.environ
    for var, name in ENV_VARS.items():
        raw = environ.get(var)
        if raw is not None and raw != "":
            setattr(config, name, _coerce(name, raw))
    return config


def merge_cli_args(config: BeaconConfig, args) -> BeaconConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(BeaconConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, _coerce(f.name, cli_val))
    return config


def build_config(config_path: Optional[str] = None, args=None,
                 environ: Optional[Mapping[str, str]] = None) -> BeaconConfig:
    """Defaults, then YAML file, then environment, then CLI flags."""
    config = load_config(config_path) if config_path else BeaconConfig()
    apply_env(config, environ)
    if args is not None:
        merge_cli_args(config, args)
    return config


def config_to_yaml(config: BeaconConfig) -> str:
    """Serialize the effective configuration to YAML."""
    data: dict = {}
    for f in fields(BeaconConfig):
        data[f.name] = getattr(config, f.name)
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
