"""
LoreLoom Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Environment variables override YAML settings with format:
  LORELOOM_{SECTION}_{KEY}

Example:
  LORELOOM_SERVER_PORT=9000
  LORELOOM_WORLD_BOOK_SCAN_DEPTH=4
"""

import copy
import os
import yaml
from typing import Dict, Any, Optional

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Default configuration (fallback if config.yaml missing)
DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_origins": ["*"],
        "log_level": "INFO"
    },
    "storage": {
        "db_path": "data/loreloom.db",
        "worldbook_dir": "data/worldbooks"
    },
    "world_book": {
        "scan_depth": 2,
        "include_names": True,
        "max_recursion_steps": 2,
        "min_activations": 0,
        "max_depth": 0,
        "case_sensitive": False,
        "match_whole_words": True
    },
    "regex": {
        "max_pattern_length": 256,
        "reject_nested_quantifiers": True
    },
    "features": {
        "auto_import": True
    }
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Defaults, overlaid by config.yaml (when present), overlaid by LORELOOM_* env vars."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = config_path or os.path.join(BASE_DIR, "config.yaml")

    if not os.path.exists(config_path):
        print(f"[CONFIG] No config file at {config_path}; using defaults")
    else:
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                overrides = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            print(f"[CONFIG WARNING] Ignoring {config_path}: {e}")
        else:
            if isinstance(overrides, dict):
                config = _deep_merge(config, overrides)
            else:
                print(f"[CONFIG WARNING] Ignoring {config_path}: top level is not a mapping")

    return _apply_env_overrides(config)


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """Return ``base`` with ``override`` merged in, section by section."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Format: LORELOOM_{SECTION}_{KEY}

    Section and key names may themselves contain underscores, so the longest
    matching section name wins:
        LORELOOM_WORLD_BOOK_SCAN_DEPTH=4 -> config["world_book"]["scan_depth"]
    """
    env_prefix = "LORELOOM_"
    if environ is None:
        environ = os.environ

    for env_key, env_value in environ.items():
        if not env_key.startswith(env_prefix):
            continue

        path = env_key[len(env_prefix):].lower()

        section = None
        for candidate in sorted(config.keys(), key=len, reverse=True):
            if path.startswith(candidate + "_") and isinstance(config[candidate], dict):
                section = candidate
                break
        if section is None:
            continue  # Unknown section

        target = config[section]
        final_key = path[len(section) + 1:]
        if final_key not in target:
            continue

        # Type conversion based on existing config value
        current = target[final_key]
        try:
            if isinstance(current, bool):
                target[final_key] = env_value.lower() in ('true', '1', 'yes')
            elif isinstance(current, int):
                target[final_key] = int(env_value)
            elif isinstance(current, float):
                target[final_key] = float(env_value)
            elif isinstance(current, list):
                target[final_key] = [v.strip() for v in env_value.split(',') if v.strip()]
            else:
                target[final_key] = env_value
        except ValueError:
            print(f"[CONFIG WARNING] Ignoring {env_key}={env_value!r}: expected {type(current).__name__}")

    return config


def resolve_path(path: str) -> str:
    """Resolve a configured path relative to the repository root."""
    if os.path.isabs(path):
        return path
    return os.path.join(BASE_DIR, path)


# Global config instance (loaded once on import)
CONFIG = load_config()
