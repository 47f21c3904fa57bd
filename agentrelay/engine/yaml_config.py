"""YAML configuration loader.

Loads a single YAML file layered on top of the RELAY_* environment.
Keys absent from the file keep their environment (or default) value.

Example YAML:
    relay:
      base_folder: ~/projects
      default_provider: claude
      default_mode: approve
      process_timeout_seconds: 600
      approval_transport: relay
      server_port: 3001

    providers:
      claude:
        command: /opt/claude/bin/claude
      codex:
        command: codex
        model: gpt-5-codex
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

_PROVIDER_FIELDS = {
    "claude": {"command": "claude_command"},
    "codex": {"command": "codex_command", "model": "codex_model"},
}


@dataclass
class LoadedConfig:
    """Result of load_yaml_config()."""
    relay: RelayConfig
    source: Path | None = None


def _coerce(field_type: str, value):
    """Convert a YAML scalar to the dataclass field's declared type."""
    if value is None:
        return None
    if field_type == "float":
        return float(value)
    if field_type == "int":
        return int(value)
    if field_type == "bool":
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    return str(value)


def apply_overrides(config: RelayConfig, values: dict) -> RelayConfig:
    """Return a copy of *config* with *values* applied.

    Unknown keys are logged and ignored.
    """
    fields = {f.name: f for f in dataclasses.fields(RelayConfig)}
    updates = {}
    for key, value in values.items():
        field_def = fields.get(key)
        if field_def is None:
            logger.warning("Ignoring unknown relay config key: %s", key)
            continue
        type_name = str(field_def.type).split("|")[0].strip()
        updates[key] = _coerce(type_name, value)
    if "base_folder" in updates and updates["base_folder"]:
        updates["base_folder"] = os.path.expanduser(updates["base_folder"])
    return dataclasses.replace(config, **updates)


def load_yaml_config(
    path: str | Path,
    base: RelayConfig | None = None,
) -> LoadedConfig:
    """Load and parse a YAML config file.

    *base* defaults to ``RelayConfig.from_env()``; the file's ``relay``
    and ``providers`` sections are layered over it.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = base if base is not None else RelayConfig.from_env()

    relay_section = raw.get("relay") or {}
    if relay_section:
        config = apply_overrides(config, relay_section)

    provider_updates: dict = {}
    for provider_name, settings in (raw.get("providers") or {}).items():
        mapping = _PROVIDER_FIELDS.get(provider_name)
        if mapping is None:
            logger.warning("Ignoring unknown provider in config: %s", provider_name)
            continue
        for key, value in (settings or {}).items():
            target = mapping.get(key)
            if target is None:
                logger.warning(
                    "Ignoring unknown key %s for provider %s", key, provider_name
                )
                continue
            provider_updates[target] = value
    if provider_updates:
        config = apply_overrides(config, provider_updates)

    for section in sorted(set(raw) - {"relay", "providers"}):
        logger.warning("Ignoring unknown config section: %s", section)

    logger.info(
        "Loaded YAML config %s: provider=%s mode=%s transport=%s",
        path.name, config.default_provider, config.default_mode,
        config.approval_transport,
    )
    return LoadedConfig(relay=config, source=path)
