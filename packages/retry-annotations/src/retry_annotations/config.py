"""Project-wide retry configuration.

A ``pytest-retry.xml`` (or ``.xml.dist``) file carries a single optional root
attribute, ``baseRetryCount``::

    <pytest-retry baseRetryCount="2"/>

The YAML equivalent is ``pytest-retry.yaml`` with ``base_retry_count: 2``.
"""
from __future__ import annotations

import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_RETRY_COUNT = 3

CONFIG_FILENAMES = (
    "pytest-retry.xml",
    "pytest-retry.xml.dist",
    "pytest-retry.yaml",
    "pytest-retry.yml",
)

CONFIG_ENV_VAR = "RETRY_ANNOTATIONS_CONFIG"

_INTEGER = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?\s*$")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class RetryConfig:
    base_retry_count: int = DEFAULT_RETRY_COUNT
    source: Path | None = None


def _resolve_env(value: str) -> str:
    if not value.startswith("env:"):
        return value
    key = value[4:].strip()
    if not key:
        raise ConfigError("Invalid env ref: empty key")
    resolved = os.getenv(key)
    if resolved is None or not resolved.strip():
        raise ConfigError(f"Environment variable '{key}' referenced in config is missing/empty")
    return resolved.strip()


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_RETRY_COUNT
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        resolved = _resolve_env(value.strip())
        if _INTEGER.match(resolved):
            return int(float(resolved))
    return DEFAULT_RETRY_COUNT


def find_config_file(cwd: Path | None = None) -> Path | None:
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    base = cwd or Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _read_xml(path: Path) -> Any:
    try:
        root = ET.parse(str(path)).getroot()
    except ET.ParseError as exc:
        raise ConfigError(f'Could not parse "{path}": {exc}') from exc
    return root.attrib.get("baseRetryCount")


def _read_yaml(path: Path) -> Any:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f'Could not parse "{path}": {exc}') from exc
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("Config must be an object")
    return raw.get("base_retry_count")


def load_config(path: Path | str) -> RetryConfig:
    cfg_path = Path(path)
    if not cfg_path.is_file():
        raise ConfigError(f'Could not read "{path}".')

    if cfg_path.suffix in {".yaml", ".yml"}:
        value = _read_yaml(cfg_path)
    else:
        value = _read_xml(cfg_path)

    count = DEFAULT_RETRY_COUNT if value is None else _coerce_count(value)
    return RetryConfig(base_retry_count=count, source=cfg_path.resolve())


def resolve_config(explicit: Path | str | None = None, cwd: Path | None = None) -> RetryConfig | None:
    """Explicit path, else a discovered file, else None (no project-wide default)."""
    if explicit:
        return load_config(explicit)
    found = find_config_file(cwd)
    if found is None:
        return None
    return load_config(found)
