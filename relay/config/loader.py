"""Config file I/O: load from JSON, merge env vars, save back to disk."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from relay.config.schema import RelayConfig

_DEFAULT_CONFIG_DIR = Path.home() / ".relay"
_DEFAULT_CONFIG_FILE = _DEFAULT_CONFIG_DIR / "config.json"


def get_config_path() -> Path:
    return _DEFAULT_CONFIG_FILE


def load_config(path: Path | None = None) -> RelayConfig:
    """Load config from JSON file, falling back to defaults if file is missing.

    Environment variables with RELAY_ prefix override file values.
    Nested keys use __ as delimiter (e.g. RELAY_MODEL_POINTERS__MAIN).
    """
    config_path = path or _DEFAULT_CONFIG_FILE
    config_path = config_path.expanduser().resolve()

    if config_path.exists():
        raw = json.loads(config_path.read_text(encoding="utf-8"))
        config = RelayConfig(**raw)
        logger.debug(
            "Loaded config from {} ({} model profile(s))", config_path, len(config.model_profiles)
        )
        return config

    return RelayConfig()


def save_config(config: RelayConfig, path: Path | None = None) -> Path:
    """Serialize current config to JSON and write to disk atomically.

    Uses temp-file-then-rename for crash safety.
    """
    config_path = path or _DEFAULT_CONFIG_FILE
    config_path = config_path.expanduser().resolve()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")
    _strip_empty_profiles(data)

    tmp_path = config_path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp_path.rename(config_path)
    return config_path


def _strip_empty_profiles(data: dict) -> None:
    """Drop model profiles that carry no model name.

    Such entries can never be resolved and only pollute config.json.
    """
    profiles = data.get("model_profiles")
    if not isinstance(profiles, list):
        return
    data["model_profiles"] = [
        p for p in profiles if isinstance(p, dict) and p.get("model_name")
    ]
