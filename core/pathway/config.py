"""Shared pathway engine configuration utilities.

Centralises reading of ~/.pathway/configuration.json and the AI_* environment
variables so the engine, CLI and HTTP server share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

PATHWAY_CONFIG_FILE = Path.home() / ".pathway" / "configuration.json"

DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.3


def get_config_path() -> Path:
    """Return the configuration file path, honouring PATHWAY_CONFIG."""
    override = os.environ.get("PATHWAY_CONFIG")
    if override:
        return Path(override)
    return PATHWAY_CONFIG_FILE


def get_pathway_config() -> dict[str, Any]:
    """Load configuration from ~/.pathway/configuration.json."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_model() -> str:
    """Return the default model id in ``provider/model`` form."""
    env_model = os.environ.get("AI_DEFAULT_MODEL")
    if env_model:
        return env_model
    llm = get_pathway_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_default_temperature() -> float:
    """Return the default sampling temperature."""
    env_temp = os.environ.get("AI_DEFAULT_TEMPERATURE")
    if env_temp:
        try:
            return float(env_temp)
        except ValueError:
            pass
    value = get_pathway_config().get("llm", {}).get("temperature")
    if isinstance(value, int | float):
        return float(value)
    return DEFAULT_TEMPERATURE


def get_api_key(provider: str) -> str | None:
    """Return the API key for a provider from env or the config file."""
    env_key = os.environ.get(f"{provider.upper()}_API_KEY")
    if env_key:
        return env_key
    keys = get_pathway_config().get("api_keys", {})
    return keys.get(provider)


def _engine_setting(name: str, default: Any) -> Any:
    return get_pathway_config().get("engine", {}).get(name, default)


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine tuning loaded from ~/.pathway/configuration.json."""

    default_model: str = field(default_factory=get_default_model)
    default_temperature: float = field(default_factory=get_default_temperature)
    ai_retry_attempts: int = field(default_factory=lambda: _engine_setting("ai_retry_attempts", 2))
    ai_backoff_base_seconds: float = 0.5
    ai_backoff_max_seconds: float = 8.0
    ai_call_timeout_seconds: float = field(
        default_factory=lambda: _engine_setting("ai_call_timeout_seconds", 60.0)
    )
    input_poll_interval_seconds: float = 1.0
    event_buffer_size: int = field(
        default_factory=lambda: _engine_setting("event_buffer_size", 1000)
    )
    max_history: int = 1000
    run_retention_max: int = 1000
