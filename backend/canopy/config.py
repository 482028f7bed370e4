"""Application configuration.

Layered, lowest precedence first: the packaged default_config.yml, an
optional user YAML file named by CANOPY_CONFIG, then environment variables
(a backend/.env file is loaded by main before this runs).
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.yml"


class GenerationConfig(BaseModel):
    provider: str = "llamacpp"
    model: str | None = None
    system_prompt: str = ""
    exclude_thought: bool = True
    options: dict[str, Any] = Field(default_factory=dict)


class AppConfig(BaseModel):
    database_path: str = "canopy.db"
    log_level: str = "INFO"
    legacy_dir: str | None = None
    llamacpp_base_url: str = "http://localhost:8080/v1"
    openai_api_key: str | None = None
    openrouter_api_key: str | None = None
    anthropic_api_key: str | None = None
    generation: GenerationConfig = Field(default_factory=GenerationConfig)


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(env: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    generation: dict[str, Any] = {}
    simple = {
        "CANOPY_DB_PATH": "database_path",
        "CANOPY_LEGACY_DIR": "legacy_dir",
        "CANOPY_LOG_LEVEL": "log_level",
        "LLAMACPP_BASE_URL": "llamacpp_base_url",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENROUTER_API_KEY": "openrouter_api_key",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
    }
    for var, key in simple.items():
        if env.get(var):
            overrides[key] = env[var]
    if env.get("CANOPY_PROVIDER"):
        generation["provider"] = env["CANOPY_PROVIDER"]
    if env.get("CANOPY_MODEL"):
        generation["model"] = env["CANOPY_MODEL"]
    # An empty system prompt is a valid override
    if "CANOPY_SYSTEM_PROMPT" in env:
        generation["system_prompt"] = env["CANOPY_SYSTEM_PROMPT"]
    if generation:
        overrides["generation"] = generation
    return overrides


def load_config(
    path: str | Path | None = None,
    env: dict[str, str] | None = None,
) -> AppConfig:
    """Build the effective configuration."""
    env = dict(os.environ) if env is None else env
    data = _read_yaml(_DEFAULT_CONFIG_PATH) if _DEFAULT_CONFIG_PATH.exists() else {}

    user_path = path or env.get("CANOPY_CONFIG")
    if user_path:
        user_file = Path(user_path)
        if user_file.exists():
            data = _merge(data, _read_yaml(user_file))
        else:
            logger.warning("Config file %s not found; using defaults", user_file)

    data = _merge(data, _env_overrides(env))
    return AppConfig.model_validate(data)
