"""
Configuration loader for the chatbot automation engine.
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
    max_unresolved_attempts: int = 3    # unmatched inputs before a forced fallback
    cas_retries: int = 1                # re-reads after a lost compare-and-swap
    store_timeout_s: float = 2.0        # per session-store call
    config_refresh_interval_s: float = 30.0
    history_turns: int = 10             # turns kept on the session for AI handoff context
    sweep_interval_s: float = 60.0      # active expiry sweep


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./chatbot_automation.db"    # postgresql:// | mysql:// | sqlite://
    session_backend: str = "memory"                   # "sql" | "memory" | "redis"
    config_backend: str = "memory"                    # "sql" | "memory" | "rest"
    redis_url: str = "redis://localhost:6379"
    redis_prefix: str = "chatbot"


@dataclass
class CollaboratorConfig:
    ai_assistant_url: str = ""
    escalation_url: str = ""
    config_service_url: str = ""
    api_token: str = ""
    timeout_s: float = 10.0


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ChatbotAutomation"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    collaborators: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


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


def _build(cls, raw: dict[str, Any], default):
    """Overlay the known keys of ``raw`` onto a default dataclass instance."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**{**default.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHATBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "engine" in raw:
            settings.engine = _build(EngineConfig, raw["engine"], settings.engine)

        if "database" in raw:
            settings.database = _build(DatabaseConfig, raw["database"], settings.database)

        if "collaborators" in raw:
            settings.collaborators = _build(
                CollaboratorConfig, raw["collaborators"], settings.collaborators,
            )

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (for testing)."""
    global _settings
    _settings = None
