from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml

CONFIG_ENV = "VISIONARY_CONFIG"
DEFAULT_CONFIG_PATH = Path("config.yaml")

DEFAULTS: Dict[str, Any] = {
    "storage_dir": ".visionary",
    "model": "gpt-4o-mini",
    "api_key_env": "OPENAI_API_KEY",
    "page_size": 1000,
    "library_path": None,
    "empty_results": "show_nothing",
    "max_edge": 1024,
    "telemetry": True,
}


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    """
    Return the YAML config merged over ``DEFAULTS``.
    """
    data = _load_yaml(Path(path) if path is not None else config_path())
    merged = dict(DEFAULTS)
    merged.update({key: value for key, value in data.items() if value is not None})
    merged["page_size"] = max(int(merged.get("page_size") or DEFAULTS["page_size"]), 1)
    merged["max_edge"] = max(int(merged.get("max_edge") or DEFAULTS["max_edge"]), 64)
    return merged


def save_config(update: Dict[str, Any], path: str | Path | None = None) -> None:
    target = Path(path) if path is not None else config_path()
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(update, handle, sort_keys=True)


def resolve_api_key(cfg: Dict[str, Any]) -> str | None:
    env_name = str(cfg.get("api_key_env") or DEFAULTS["api_key_env"])
    return os.environ.get(env_name) or None


__all__ = ["DEFAULTS", "load_config", "save_config", "config_path", "resolve_api_key"]
