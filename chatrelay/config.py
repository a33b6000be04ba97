"""
Config loader for chatrelay.
Reads config.yaml once at startup. All other modules import from here.
${ENV_VAR} references anywhere in the file are resolved from the environment
(.env is loaded first, so secrets can live there).
"""

import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(os.environ.get("CHATRELAY_CONFIG", Path(__file__).parent.parent / "config.yaml"))

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None


def max_messages_per_day(cfg: dict, user_type: str) -> int:
    """
    Daily message quota for a user tier.
    Unknown tiers fall back to the 'regular' entitlement.
    """
    entitlements = cfg.get("entitlements", {})
    tier = entitlements.get(user_type) or entitlements.get("regular", {})
    return int(tier.get("max_messages_per_day", 100))
