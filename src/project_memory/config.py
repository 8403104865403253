"""Configuration for project memory.

A global YAML file is merged with a per-project one (project wins), then each
``llm`` key falls back to a ``PROJECT_MEMORY_LLM_*`` environment variable.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .ranking import RankingWeights

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_PATH = Path("~/.config/project-memory/config.yaml")
PROJECT_CONFIG_PATH = Path(".claude/project-memory.yaml")
PROJECT_DB_PATH = Path(".claude/project-memory.db")
DISABLE_FLAG_PATH = Path("~/.project-memory-disabled")

ENV_PREFIX = "PROJECT_MEMORY_"
LLM_ENV_KEYS = ("provider", "model", "base_url", "api_key")

# Providers that speak the OpenAI chat-completions protocol.
OPENAI_COMPATIBLE = frozenset({"openai", "ollama", "openrouter"})
LOCAL_PROVIDERS = frozenset({"ollama"})


class LLMSettings(BaseModel):
    provider: Literal["anthropic", "bedrock", "openai", "ollama", "openrouter"] = "anthropic"
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None

    def usable(self, env: Mapping[str, str] | None = None) -> bool:
        """Whether a call could plausibly succeed without further setup."""
        env = os.environ if env is None else env
        if self.provider in LOCAL_PROVIDERS:
            return True
        if self.provider == "bedrock":
            return True
        if self.provider == "anthropic":
            return bool(self.api_key or env.get("ANTHROPIC_API_KEY"))
        if self.provider == "openai":
            return bool(self.api_key or self.base_url or env.get("OPENAI_API_KEY"))
        return bool(self.api_key)


class DistillSettings(BaseModel):
    strategy: Literal["auto", "heuristic", "model"] = "auto"
    timeout_seconds: float = 20.0


class MemoryConfig(BaseModel):
    llm: LLMSettings = Field(default_factory=LLMSettings)
    distill: DistillSettings = Field(default_factory=DistillSettings)
    ranking: RankingWeights = Field(default_factory=RankingWeights)
    db_path: str | None = None
    busy_timeout_ms: int = 1500
    startup_budget: int = 8000
    compact_budget: int = 16000

    def use_model(self, env: Mapping[str, str] | None = None) -> bool:
        if self.distill.strategy == "heuristic":
            return False
        if self.distill.strategy == "model":
            return True
        return self.llm.usable(env)


def _deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge recursively; non-dict values in ``override`` replace ``base``."""
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(existing, value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", path)
        return {}
    return dict(data)


def global_config_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    return Path(env.get(f"{ENV_PREFIX}CONFIG", str(GLOBAL_CONFIG_PATH))).expanduser()


def load_config(
    project_dir: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    global_path: str | Path | None = None,
) -> MemoryConfig:
    """Load and merge configuration. Invalid files degrade to defaults."""
    env = os.environ if env is None else env
    merged = _load_yaml(Path(global_path).expanduser() if global_path else global_config_path(env))
    if project_dir:
        merged = _deep_merge_dicts(merged, _load_yaml(Path(project_dir) / PROJECT_CONFIG_PATH))

    llm = dict(merged.get("llm") or {})
    for key in LLM_ENV_KEYS:
        if not llm.get(key):
            value = env.get(f"{ENV_PREFIX}LLM_{key.upper()}")
            if value:
                llm[key] = value.lower() if key == "provider" else value
    merged["llm"] = llm

    try:
        return MemoryConfig.model_validate(merged)
    except ValidationError as e:
        logger.warning("Invalid project-memory configuration, using defaults: %s", e)
        fallback = {k: v for k, v in llm.items() if k in LLM_ENV_KEYS}
        try:
            return MemoryConfig(llm=LLMSettings.model_validate(fallback))
        except ValidationError:
            return MemoryConfig()


def resolve_db_path(
    project_dir: str | Path,
    config: MemoryConfig | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    env = os.environ if env is None else env
    override = env.get(f"{ENV_PREFIX}DB_PATH") or (config.db_path if config else None)
    if override:
        path = Path(override).expanduser()
        return path if path.is_absolute() else Path(project_dir) / path
    return Path(project_dir) / PROJECT_DB_PATH


def disable_flag_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    return Path(env.get(f"{ENV_PREFIX}DISABLE_FLAG", str(DISABLE_FLAG_PATH))).expanduser()


def is_disabled(env: Mapping[str, str] | None = None) -> bool:
    return disable_flag_path(env).exists()
