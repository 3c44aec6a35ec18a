"""
Configuration loader for the BotForge flow engine.
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
class LLMConfig:
    provider: str = "openai"                 # "openai" | "anthropic"
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 500
    api_key: str = ""                        # empty → keyword fallback answers only


@dataclass
class EngineConfig:
    ai_timeout_seconds: float = 15.0
    lock_timeout_seconds: float = 30.0
    history_limit: int = 50                  # messages kept on the conversation state
    ai_history_window: int = 10              # messages passed to the AI collaborator
    default_fallback_message: str = "Something went wrong. Let me connect you with a human agent."
    default_closing_message: str = (
        "Thank you for chatting with me! Is there anything else I can help you with?"
    )
    reprompt_message: str = (
        "I didn't understand your selection. Please choose one of the available options."
    )


@dataclass
class WebhookConfig:
    max_attempts: int = 2                    # connection-level retries only
    default_timeout: float = 30.0


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"            # "memory" | "file"
    store_file_dir: str = "./data"           # directory for file backend


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass
class Settings:
    app_name: str = "BotForge"
    debug: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    llm: LLMConfig = field(default_factory=LLMConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), match.group(0))
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


def _section(cls, raw: dict[str, Any], default):
    """Build a dataclass section, keeping defaults for keys the YAML omits."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**{**default.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOTFORGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.cors_origins = raw.get("cors_origins", settings.cors_origins)

        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"], settings.llm)
            # An unset ${VAR} means no key, not a literal key
            if settings.llm.api_key.startswith("${"):
                settings.llm.api_key = ""
        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"], settings.engine)
        if "webhooks" in raw:
            settings.webhooks = _section(WebhookConfig, raw["webhooks"], settings.webhooks)
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "logging" in raw:
            settings.logging = _section(LoggingConfig, raw["logging"], settings.logging)

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                creds = ch_data.get("credentials") or {}
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials={k: v for k, v in creds.items()
                                 if not (isinstance(v, str) and v.startswith("${"))},
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
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
