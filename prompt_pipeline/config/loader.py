"""
Configuration management and loading.

Handles pipeline settings from YAML and secrets from environment variables.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from prompt_pipeline.core.executor import DEFAULT_TIMEOUT_SECONDS, MAX_TOOL_ROUNDS, ModelConfig
from prompt_pipeline.core.pricing import DEFAULT_MODEL
from prompt_pipeline.core.quota import QuotaPolicy
from prompt_pipeline.sdk.openai_client import GEMINI_OPENAI_BASE_URL
from prompt_pipeline.sdk.web_search import MAX_RESULTS_PER_QUERY
from prompt_pipeline.storage.db import DEFAULT_DB_PATH
from prompt_pipeline.storage.models import ActorType


@dataclass(frozen=True)
class QuotaConfig:
    """Request limit for one actor type."""
    limit: int
    window_minutes: float

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be > 0")

    def to_policy(self) -> QuotaPolicy:
        return QuotaPolicy(limit=self.limit, window=timedelta(minutes=self.window_minutes))


@dataclass(frozen=True)
class GenerationConfig:
    """Model endpoint and executor limits."""
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = GEMINI_OPENAI_BASE_URL
    api_key_env: str = "GEMINI_API_KEY"
    max_tool_rounds: int = MAX_TOOL_ROUNDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None

    def __post_init__(self):
        """Validate generation limits."""
        if not self.model or not self.model.strip():
            raise ValueError("model cannot be empty")
        if self.max_tool_rounds < 0:
            raise ValueError("max_tool_rounds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")

    def model_config(self) -> ModelConfig:
        return ModelConfig(
            model=self.model,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens
        )

    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass(frozen=True)
class SearchConfig:
    """Web search tool settings."""
    enabled: bool = True
    max_results: int = 5
    api_key_env: str = "GOOGLE_SEARCH_API_KEY"
    cx_env: str = "GOOGLE_SEARCH_CX"

    def __post_init__(self):
        if not 1 <= self.max_results <= MAX_RESULTS_PER_QUERY:
            raise ValueError(f"max_results must be between 1 and {MAX_RESULTS_PER_QUERY}")

    def credentials_available(self) -> bool:
        return bool(os.environ.get(self.api_key_env) and os.environ.get(self.cx_env))


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    db_path: str = DEFAULT_DB_PATH
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    quotas: Dict[ActorType, QuotaConfig] = field(default_factory=lambda: dict(DEFAULT_QUOTAS))
    required_credits: int = 1
    search: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self):
        if self.required_credits < 0:
            raise ValueError("required_per_batch must be >= 0")

    def quota_policies(self) -> Dict[ActorType, QuotaPolicy]:
        return {actor_type: quota.to_policy() for actor_type, quota in self.quotas.items()}


DEFAULT_QUOTAS = {
    ActorType.AUTHENTICATED: QuotaConfig(limit=60, window_minutes=60),
    ActorType.ANONYMOUS: QuotaConfig(limit=18, window_minutes=60),
}

_ALLOWED_KEYS = {
    None: {"storage", "generation", "quota", "credits", "search"},
    "storage": {"db_path"},
    "generation": {
        "model", "base_url", "api_key_env", "max_tool_rounds",
        "timeout_seconds", "temperature", "max_output_tokens",
    },
    "quota": {"authenticated", "anonymous"},
    "quota.entry": {"limit", "window_minutes"},
    "credits": {"required_per_batch"},
    "search": {"enabled", "max_results", "api_key_env", "cx_env"},
}


def default_pipeline_config() -> PipelineConfig:
    """Configuration used when no file is given."""
    return PipelineConfig()


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from a YAML file.

    Every section is optional; missing values use the defaults. Unknown
    keys are rejected so typos never silently fall back to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_pipeline_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, None, "top level")

    storage = _section(raw_config, "storage")
    generation = _section(raw_config, "generation")
    quota = _section(raw_config, "quota")
    credits = _section(raw_config, "credits")
    search = _section(raw_config, "search")

    quotas = dict(DEFAULT_QUOTAS)
    for actor_type in ActorType:
        if actor_type.value in quota:
            quotas[actor_type] = _parse_quota(quota[actor_type.value], f"quota.{actor_type.value}")

    db_path = storage.get("db_path", DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path:
        raise ValueError("'storage.db_path' must be a non-empty string")

    return PipelineConfig(
        db_path=db_path,
        generation=_parse_generation(generation),
        quotas=quotas,
        required_credits=_integer(credits, "required_per_batch", 1, "credits"),
        search=_parse_search(search)
    )


def _check_keys(data: Mapping[str, Any], section: Optional[str], path: str) -> None:
    unknown_keys = set(data.keys()) - _ALLOWED_KEYS[section]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    _check_keys(data, name, name)
    return data


def _integer(data: Mapping[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Mapping[str, Any], key: str, default: Optional[float], path: str) -> Optional[float]:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _string(data: Mapping[str, Any], key: str, default: Optional[str], path: str) -> Optional[str]:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _parse_quota(data: Any, path: str) -> QuotaConfig:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, "quota.entry", path)

    if 'limit' not in data:
        raise ValueError(f"Missing required 'limit' in {path}")
    if 'window_minutes' not in data:
        raise ValueError(f"Missing required 'window_minutes' in {path}")

    return QuotaConfig(
        limit=_integer(data, "limit", 0, path),
        window_minutes=_number(data, "window_minutes", None, path)
    )


def _parse_generation(data: Mapping[str, Any]) -> GenerationConfig:
    defaults = GenerationConfig()
    max_output_tokens = data.get("max_output_tokens")
    if max_output_tokens is not None:
        max_output_tokens = _integer(data, "max_output_tokens", 0, "generation")

    return GenerationConfig(
        model=_string(data, "model", defaults.model, "generation"),
        base_url=_string(data, "base_url", defaults.base_url, "generation"),
        api_key_env=_string(data, "api_key_env", defaults.api_key_env, "generation"),
        max_tool_rounds=_integer(data, "max_tool_rounds", defaults.max_tool_rounds, "generation"),
        timeout_seconds=_number(data, "timeout_seconds", defaults.timeout_seconds, "generation"),
        temperature=_number(data, "temperature", None, "generation"),
        max_output_tokens=max_output_tokens
    )


def _parse_search(data: Mapping[str, Any]) -> SearchConfig:
    defaults = SearchConfig()
    enabled = data.get("enabled", defaults.enabled)
    if not isinstance(enabled, bool):
        raise ValueError("'enabled' in search must be a boolean")

    return SearchConfig(
        enabled=enabled,
        max_results=_integer(data, "max_results", defaults.max_results, "search"),
        api_key_env=_string(data, "api_key_env", defaults.api_key_env, "search"),
        cx_env=_string(data, "cx_env", defaults.cx_env, "search")
    )
