"""
Configuration loading for the dashboard service.

Settings come from dashboard/config/dashboard.yaml (or the file named by
DASHBOARD_CONFIG), with environment variables taking precedence. A missing
file means built-in defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dashboard.logging_utils import get_logger

DASHBOARD_DIR = Path(__file__).resolve().parent
ROOT_DIR = DASHBOARD_DIR.parent
CONFIG_PATH = DASHBOARD_DIR / "config" / "dashboard.yaml"

DEV_ENCRYPTION_KEY = "default-dev-key-change-in-production"

# env var -> (settings field, converter)
ENV_OVERRIDES = {
    "PORT": ("port", int),
    "DATABASE_URL": ("database_url", str),
    "OLLAMA_URL": ("ollama_url", str),
    "COMFYUI_URL": ("comfyui_url", str),
    "ENCRYPTION_KEY": ("encryption_key", str),
    "MEDIA_STORAGE_PATH": ("storage_path", str),
    "POLL_INTERVAL_S": ("poll_interval_s", float),
    "POLL_MAX_ATTEMPTS": ("poll_max_attempts", int),
}


@dataclass(frozen=True)
class Settings:
    service_id: str = "gen-dashboard"
    host: str = "0.0.0.0"
    port: int = 3001
    database_url: str = f"sqlite:///{ROOT_DIR / 'data' / 'dashboard.db'}"
    ollama_url: str = "http://localhost:11434"
    comfyui_url: str = "http://localhost:8188"
    encryption_key: str = DEV_ENCRYPTION_KEY
    storage_path: str = str(ROOT_DIR / "storage")
    poll_interval_s: float = 1.0
    poll_max_attempts: int = 120
    poll_in_background: bool = False
    cors_origins: tuple = ("http://localhost:5173",)

    @property
    def uses_dev_key(self) -> bool:
        return self.encryption_key == DEV_ENCRYPTION_KEY


def _known_values(raw: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        get_logger().warning("config_unknown_keys", keys=unknown)
    values = {k: v for k, v in raw.items() if k in known}
    if isinstance(values.get("cors_origins"), list):
        values["cors_origins"] = tuple(values["cors_origins"])
    return values


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from the YAML file then apply environment overrides."""
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get("DASHBOARD_CONFIG") or CONFIG_PATH)

    raw: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config {config_path} must be a mapping, got {type(raw).__name__}")

    settings = replace(Settings(), **_known_values(raw))

    overrides = {}
    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        if env.get(env_name):
            overrides[field_name] = convert(env[env_name])
    if overrides:
        settings = replace(settings, **overrides)

    if settings.uses_dev_key:
        get_logger().warning(
            "config_dev_encryption_key",
            hint="Set ENCRYPTION_KEY before storing real provider credentials",
        )
    return settings
