"""
Configuration loader for the IVR flow engine.
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
class EngineConfig:
    execution_timeout_s: int = 1800          # wall-clock bound per call
    max_node_executions: int = 200
    max_loop_iterations: int = 50
    loop_window: int = 10                    # recent visits inspected for loops
    loop_threshold: int = 5                  # occurrences in the window that count as looping
    sweep_interval_s: int = 3600
    api_call_timeout_s: float = 5.0
    side_effect_timeout_s: float = 5.0
    workflow_cache_size: int = 64
    apology_message: str = (
        "We're sorry, something went wrong with this call. Please try again later. Goodbye."
    )


@dataclass
class TelephonyConfig:
    provider: str = "twilio"
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    public_base_url: str = ""                # canonical base for signatures + callbacks
    allow_unsigned: bool = False             # ignored in production
    default_voice: str = "alice"
    default_language: str = "en-US"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./ivr_engine.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class NotificationConfig:
    enabled: bool = True
    email_webhook_url: str = ""              # HTTP relay that delivers e-mail


@dataclass
class Settings:
    app_name: str = "IVR Flow Engine"
    environment: str = "development"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    telephony: TelephonyConfig = field(default_factory=TelephonyConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


_settings: Optional[Settings] = None

_UNRESOLVED = re.compile(r'\$\{\w+\}')


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
        processed = {k: _process_values(v) for k, v in obj.items()}
        # Unset variables fall back to the dataclass defaults
        return {k: v for k, v in processed.items()
                if not (isinstance(v, str) and _UNRESOLVED.fullmatch(v))}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool) -> bool:
    # Env-substituted values arrive as strings
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "IVR_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.environment = raw.get("environment", settings.environment)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)

        if "engine" in raw:
            eng = raw["engine"]
            defaults = EngineConfig()
            settings.engine = EngineConfig(
                execution_timeout_s=int(eng.get("execution_timeout_s", defaults.execution_timeout_s)),
                max_node_executions=int(eng.get("max_node_executions", defaults.max_node_executions)),
                max_loop_iterations=int(eng.get("max_loop_iterations", defaults.max_loop_iterations)),
                loop_window=int(eng.get("loop_window", defaults.loop_window)),
                loop_threshold=int(eng.get("loop_threshold", defaults.loop_threshold)),
                sweep_interval_s=int(eng.get("sweep_interval_s", defaults.sweep_interval_s)),
                api_call_timeout_s=float(eng.get("api_call_timeout_s", defaults.api_call_timeout_s)),
                side_effect_timeout_s=float(eng.get("side_effect_timeout_s", defaults.side_effect_timeout_s)),
                workflow_cache_size=int(eng.get("workflow_cache_size", defaults.workflow_cache_size)),
                apology_message=eng.get("apology_message", defaults.apology_message),
            )

        if "telephony" in raw:
            tel = raw["telephony"]
            settings.telephony = TelephonyConfig(
                provider=tel.get("provider", "twilio"),
                account_sid=tel.get("account_sid", ""),
                auth_token=tel.get("auth_token", ""),
                from_number=tel.get("from_number", ""),
                public_base_url=tel.get("public_base_url", ""),
                allow_unsigned=_as_bool(tel.get("allow_unsigned"), False),
                default_voice=tel.get("default_voice", "alice"),
                default_language=tel.get("default_language", "en-US"),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "notifications" in raw:
            nt = raw["notifications"]
            settings.notifications = NotificationConfig(
                enabled=_as_bool(nt.get("enabled"), True),
                email_webhook_url=nt.get("email_webhook_url", ""),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
