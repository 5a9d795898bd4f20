"""Runtime configuration.

Precedence (highest first): CLI overrides, environment variables, the YAML
config file, built-in defaults from ``Constants``. The resulting ``Config``
value is handed to the registry client, resolver and installer explicitly.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml

from constants import Constants

logger = logging.getLogger(__name__)

_ENV_OVERRIDES = {
    Constants.REGISTRY_ENV: ("registry_url", str),
    "PROTOPACK_MAX_CONCURRENCY": ("max_concurrency", int),
    "PROTOPACK_REQUEST_TIMEOUT": ("request_timeout", float),
    "PROTOPACK_RETRY_MAX": ("retry_max", int),
    "PROTOPACK_CREDENTIALS": ("credentials_path", str),
}

_FIELD_TYPES = {
    "registry_url": str,
    "max_concurrency": int,
    "request_timeout": float,
    "retry_max": int,
    "retry_base_delay": float,
    "retry_max_delay": float,
    "versions_path": str,
    "archive_path": str,
    "vendor_dir": str,
    "credentials_path": str,
}


def _coerce(name: str, value: Any, kind: type) -> Any:
    """Convert a config value to ``kind``, raising ValueError that names the key."""
    if isinstance(value, bool) or (kind is str and not isinstance(value, str)):
        raise ValueError(f"Config value {name} must be a {kind.__name__}, got {value!r}")
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Config value {name} must be an integer, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Config value {name} must be a {kind.__name__}, got {value!r}") from exc


@dataclass(frozen=True)
class Config:
    """Settings shared by all commands."""

    registry_url: Optional[str] = None
    max_concurrency: int = Constants.MAX_CONCURRENCY
    request_timeout: float = Constants.REQUEST_TIMEOUT
    retry_max: int = Constants.HTTP_RETRY_MAX
    retry_base_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    retry_max_delay: float = Constants.HTTP_RETRY_MAX_DELAY_SEC
    versions_path: str = Constants.VERSIONS_PATH_TEMPLATE
    archive_path: str = Constants.ARCHIVE_PATH_TEMPLATE
    vendor_dir: str = Constants.VENDOR_DIR
    credentials_path: str = Constants.DEFAULT_CREDENTIALS_PATH

    def __post_init__(self):
        for name, kind in _FIELD_TYPES.items():
            value = getattr(self, name)
            if value is not None or name != "registry_url":
                object.__setattr__(self, name, _coerce(name, value, kind))
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.retry_max < 1:
            raise ValueError("retry_max must be at least 1")
        if self.registry_url is not None:
            object.__setattr__(self, "registry_url", self.registry_url.rstrip("/"))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        """Build a config from a parsed YAML mapping; unknown keys are logged and ignored."""
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        unknown = []
        for key, value in data.items():
            norm = str(key).replace("-", "_")
            if norm in known:
                values[norm] = value
            else:
                unknown.append(str(key))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "Config":
        """Return a copy with every non-None override applied."""
        applied = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **applied) if applied else self


def _load_yaml_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"Failed to load config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Accept both a flat file and one nested under a "protopack" section
    section = data.get("protopack")
    return section if isinstance(section, dict) else data


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, (name, conv) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or not raw.strip():
            continue
        try:
            values[name] = conv(raw.strip())
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", var, raw)
    return values


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    **cli_overrides: Any,
) -> Config:
    """Load configuration from file, environment and CLI overrides."""
    env = os.environ if env is None else env
    explicit = path or env.get(Constants.CONFIG_ENV)
    config_path = os.path.expanduser(explicit or Constants.DEFAULT_CONFIG_PATH)
    if explicit and not os.path.isfile(config_path):
        raise ValueError(f"Config file not found: {config_path}")
    config = Config.from_mapping(_load_yaml_config(config_path))
    config = config.with_overrides(**_env_overrides(env))
    return config.with_overrides(**cli_overrides)
