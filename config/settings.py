"""
Configuration loader for the back-office sweepers.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./backoffice.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                  # "sql" | "memory"


@dataclass
class TransportConfig:
    provider: str = "evolution"                    # "evolution" | "dry_run"
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0


@dataclass
class SweeperConfig:
    batch_size: int = 50
    retry_delay_minutes: int = 5        # fixed reschedule delay after a transient failure
    manual_retry_delay_minutes: int = 1
    default_max_attempts: int = 3
    country_code: str = "55"


@dataclass
class AutoCloseDefaults:
    utc_offset_hours: int = -3          # business hours are evaluated in Brasília time
    bot_minutes: int = 60
    assigned_minutes: int = 480
    business_start: str = "08:00"
    business_end: str = "20:00"


@dataclass
class Settings:
    app_name: str = "Backoffice Sweepers"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    auto_close: AutoCloseDefaults = field(default_factory=AutoCloseDefaults)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BACKOFFICE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "transport" in raw:
            tr = raw["transport"]
            settings.transport = TransportConfig(
                provider=tr.get("provider", "evolution"),
                base_url=tr.get("base_url", ""),
                api_key=tr.get("api_key", ""),
                timeout_seconds=float(tr.get("timeout_seconds", 30.0)),
            )

        if "sweeper" in raw:
            sw = raw["sweeper"]
            settings.sweeper = SweeperConfig(
                batch_size=sw.get("batch_size", 50),
                retry_delay_minutes=sw.get("retry_delay_minutes", 5),
                manual_retry_delay_minutes=sw.get("manual_retry_delay_minutes", 1),
                default_max_attempts=sw.get("default_max_attempts", 3),
                country_code=str(sw.get("country_code", "55")),
            )

        if "auto_close" in raw:
            ac = raw["auto_close"]
            settings.auto_close = AutoCloseDefaults(
                utc_offset_hours=ac.get("utc_offset_hours", -3),
                bot_minutes=ac.get("bot_minutes", 60),
                assigned_minutes=ac.get("assigned_minutes", 480),
                business_start=ac.get("business_start", "08:00"),
                business_end=ac.get("business_end", "20:00"),
            )

    # Unresolved ${VAR} placeholders and missing keys fall back to the
    # variables the hosted functions were deployed with.
    if not settings.transport.base_url or settings.transport.base_url.startswith("${"):
        settings.transport.base_url = os.environ.get("EVOLUTION_API_URL", "")
    if not settings.transport.api_key or settings.transport.api_key.startswith("${"):
        settings.transport.api_key = os.environ.get("EVOLUTION_API_KEY", "")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
