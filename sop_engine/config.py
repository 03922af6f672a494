"""
SOP Engine — Config Loader

Three-tier configuration loading:
  1. Base YAML file (sop_engine.yaml by default, optional)
  2. Per-environment overlay files (config/{SOP_ENV}.yaml merged over base)
  3. Environment variable overrides (SOP_ prefixed)

Usage:
    from sop_engine.config import load_config, EngineSettings

    cfg = load_config(base_path="sop_engine.yaml", env="prod")
    settings = EngineSettings.from_config(cfg)

    threshold = get_config_value("compression.photo_threshold_bytes", cfg, 512000)

Environment variables:
    SOP_ENV          — active profile (dev, staging, prod)
    SOP_CONFIG_DIR   — directory for overlay files (default: config/)
    SOP_*            — overrides, double underscore separates sections:
                       SOP_COMPRESSION__PHOTO_QUALITY=70
                       → {"compression": {"photo_quality": 70}}
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("sop_engine.config")

# Raw photo/signature payloads above this size are rejected before compression
MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION = 10 * 1024 * 1024

DEFAULTS: dict[str, Any] = {
    "evidence": {
        "max_bytes": MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION,
    },
    "compression": {
        "photo_threshold_bytes": 500 * 1024,
        "signature_threshold_bytes": 50 * 1024,
        "photo_max_width": 1920,
        "photo_max_height": 1080,
        "photo_quality": 80,
    },
    "signoff": {
        "require_distinct_signers": True,
        "default_roles": ["site_manager", "compliance_qa"],
    },
    "draft_cache": {
        "path": ".sop_drafts.db",
    },
    "logging": {
        "level": "INFO",
    },
}

_META_VARS = {"SOP_ENV", "SOP_CONFIG_DIR", "SOP_VERSION"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml beside the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("SOP_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("SOP_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "SOP_") -> dict[str, Any]:
    """
    Load SOP_ prefixed environment variables as config overrides.

    Naming convention:
      SOP_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    SOP_ENV, SOP_CONFIG_DIR and SOP_VERSION are meta config and excluded.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue

        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue

        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value

        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "sop_engine.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging over DEFAULTS.

    Priority (highest wins):
      1. Environment variable overrides (SOP_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file
      4. Built-in defaults
    """
    config = copy.deepcopy(DEFAULTS)

    if os.path.exists(base_path):
        with open(base_path) as f:
            base = yaml.safe_load(f) or {}
        config = deep_merge(config, base)
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("SOP_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("compression.photo_quality", cfg, 80)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class EngineSettings:
    """Typed view of the merged config consumed by the sequencer and its collaborators."""
    max_evidence_bytes: int = MAX_EVIDENCE_BYTES_BEFORE_COMPRESSION
    photo_threshold_bytes: int = 500 * 1024
    signature_threshold_bytes: int = 50 * 1024
    photo_max_width: int = 1920
    photo_max_height: int = 1080
    photo_quality: int = 80
    require_distinct_signers: bool = True
    default_signoff_roles: list[str] = field(
        default_factory=lambda: ["site_manager", "compliance_qa"]
    )
    draft_cache_path: str = ".sop_drafts.db"
    log_level: str = "INFO"

    @staticmethod
    def from_config(config: dict[str, Any]) -> EngineSettings:
        def val(path: str) -> Any:
            return get_config_value(path, config, get_config_value(path, DEFAULTS))

        roles = list(val("signoff.default_roles") or [])
        if len(roles) < 2:
            logger.warning("signoff.default_roles needs two roles, got %r; using defaults", roles)
            roles = list(DEFAULTS["signoff"]["default_roles"])

        return EngineSettings(
            max_evidence_bytes=int(val("evidence.max_bytes")),
            photo_threshold_bytes=int(val("compression.photo_threshold_bytes")),
            signature_threshold_bytes=int(val("compression.signature_threshold_bytes")),
            photo_max_width=int(val("compression.photo_max_width")),
            photo_max_height=int(val("compression.photo_max_height")),
            photo_quality=int(val("compression.photo_quality")),
            require_distinct_signers=bool(val("signoff.require_distinct_signers")),
            default_signoff_roles=roles[:2],
            draft_cache_path=str(val("draft_cache.path")),
            log_level=str(val("logging.level")).upper(),
        )
