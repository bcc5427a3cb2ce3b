"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Precedence (highest first):
1. Environment variables (a local .env file is loaded first)
2. Local config file (healforge_config.json)
3. Default values
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from healforge.errors import ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "healforge_config.json"

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_DATABASE_PATH = "./data/healforge.db"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_REGISTRY_URL = "https://registry.healforge.dev"

FIX_DELIVERY_MODES = ("commit", "pull_request")
ENVIRONMENTS = ("development", "production", "test")

# env var -> HealConfig field
_ENV_MAP = {
    "GITHUB_TOKEN": "github_token",
    "GITHUB_API_URL": "github_api_url",
    "GITHUB_WEBHOOK_SECRET": "webhook_secret",
    "HEALFORGE_DATABASE_PATH": "database_path",
    "HEALFORGE_MAX_RETRIES": "max_retries",
    "HEALFORGE_FIX_DELIVERY": "fix_delivery",
    "HEALFORGE_MIN_CONFIDENCE": "min_confidence",
    "HEALFORGE_MODEL": "model",
    "HEALFORGE_MODEL_TIMEOUT": "model_timeout",
    "HEALFORGE_HTTP_TIMEOUT": "http_timeout",
    "HOST": "host",
    "PORT": "port",
    "HEALFORGE_ENV": "environment",
}

_REGISTRY_ENV_MAP = {
    "HEALFORGE_REGISTRY_URL": "url",
    "HEALFORGE_REGISTRY_TIMEOUT": "timeout",
    "HEALFORGE_REGISTRY_RETRIES": "retries",
    "HEALFORGE_RATE_LIMIT_MAX": "rate_limit_max",
    "HEALFORGE_RATE_LIMIT_WINDOW_MINUTES": "rate_limit_window_minutes",
}


def _read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level must be an object", path)
        return {}
    return data


def _coerce(cls: type, raw: dict) -> dict:
    """Convert raw string/JSON values to the dataclass field types."""
    types = {f.name: f.type for f in fields(cls)}
    values: dict[str, Any] = {}
    problems: list[str] = []
    for name, value in raw.items():
        if name not in types or value is None:
            continue
        target = types[name]
        try:
            if target in (int, "int"):
                values[name] = int(value)
            elif target in (float, "float"):
                values[name] = float(value)
            else:
                values[name] = value
        except (TypeError, ValueError):
            problems.append(f"{name}: expected {getattr(target, '__name__', target)}, got {value!r}")
    if problems:
        raise ValidationError("Configuration validation failed", problems)
    return values


@dataclass
class HealConfig:
    """Server, ledger and orchestrator settings."""
    github_token: str = ""
    github_api_url: str = DEFAULT_GITHUB_API_URL
    webhook_secret: str = ""
    database_path: str = DEFAULT_DATABASE_PATH

    # Auto-heal policy
    max_retries: int = 10
    fix_delivery: str = "commit"
    min_confidence: float = 0.0

    # Collaborator timeouts (seconds)
    model: str = DEFAULT_MODEL
    model_timeout: float = 300.0
    http_timeout: float = 30.0

    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"

    @classmethod
    def load(cls, config_path: Optional[Path] = None, env: Optional[dict] = None) -> "HealConfig":
        """Load configuration from env > config file > defaults and validate it."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        raw = dict(_read_config_file(config_path or Path(CONFIG_FILENAME)).get("server", {}))
        for var, name in _ENV_MAP.items():
            if env.get(var):
                raw[name] = env[var]

        config = cls(**_coerce(cls, raw))
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValidationError listing every invalid setting."""
        problems = []
        if not 1 <= self.max_retries <= 100:
            problems.append(f"max_retries must be between 1 and 100, got {self.max_retries}")
        if self.fix_delivery not in FIX_DELIVERY_MODES:
            problems.append(f"fix_delivery must be one of {', '.join(FIX_DELIVERY_MODES)}")
        if not 0.0 <= self.min_confidence <= 1.0:
            problems.append("min_confidence must be between 0 and 1")
        if self.environment not in ENVIRONMENTS:
            problems.append(f"environment must be one of {', '.join(ENVIRONMENTS)}")
        if self.model_timeout <= 0 or self.http_timeout <= 0:
            problems.append("timeouts must be positive")
        if problems:
            raise ValidationError("Configuration validation failed", problems)

    @property
    def is_dev(self) -> bool:
        return self.environment == "development"


@dataclass
class RegistryConfig:
    """Pattern registry client and service settings."""
    url: str = DEFAULT_REGISTRY_URL
    timeout: float = 30.0
    retries: int = 3
    rate_limit_max: int = 100
    rate_limit_window_minutes: int = 60

    @classmethod
    def load(cls, config_path: Optional[Path] = None, env: Optional[dict] = None) -> "RegistryConfig":
        """Load registry settings from env > config file > defaults."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        raw = dict(_read_config_file(config_path or Path(CONFIG_FILENAME)).get("registry", {}))
        for var, name in _REGISTRY_ENV_MAP.items():
            if env.get(var):
                raw[name] = env[var]

        config = cls(**_coerce(cls, raw))
        problems = []
        if config.timeout <= 0:
            problems.append("timeout must be positive")
        if config.retries < 1:
            problems.append("retries must be at least 1")
        if config.rate_limit_max < 1 or config.rate_limit_window_minutes < 1:
            problems.append("rate limit settings must be positive")
        if problems:
            raise ValidationError("Registry configuration validation failed", problems)
        return config


_config: Optional[HealConfig] = None


def get_config() -> HealConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = HealConfig.load()
    return _config


def reset_config_cache() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
