"""
Configuration management and loading.

Handles application settings for storage, the language model, the result
cache and retrieval defaults. Token costs and quotas are fixed tables and
are not configurable.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml


class CacheBackend(Enum):
    """Where cached results are stored."""
    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "atlas_ai.db"

    def __post_init__(self):
        if not self.db_path or not self.db_path.strip():
            raise ValueError("db_path cannot be empty")


@dataclass(frozen=True)
class LLMConfig:
    """Language-model settings shared by fallback and generation."""
    model: str = "gpt-3.5-turbo"
    timeout_seconds: float = 15.0
    question_count: int = 5
    enabled: bool = True

    def __post_init__(self):
        """Validate model settings."""
        if not self.model or not self.model.strip():
            raise ValueError("llm.model cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("llm.timeout_seconds must be > 0")
        if self.question_count <= 0:
            raise ValueError("llm.question_count must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Result cache settings."""
    backend: CacheBackend = CacheBackend.MEMORY
    redis_url: Optional[str] = None
    ttl_seconds: int = 24 * 60 * 60
    timeout_seconds: float = 2.0

    def __post_init__(self):
        """Validate cache settings."""
        if self.ttl_seconds <= 0:
            raise ValueError("cache.ttl_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("cache.timeout_seconds must be > 0")
        if self.backend == CacheBackend.REDIS and not self.redis_url:
            raise ValueError("cache.redis_url is required when cache.backend is 'redis'")


@dataclass(frozen=True)
class RetrievalConfig:
    page_size: int = 10

    def __post_init__(self):
        if self.page_size <= 0:
            raise ValueError("retrieval.page_size must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    @classmethod
    def default(cls) -> "AppConfig":
        return cls()


def _check_section(data: Any, path: str, allowed: Set[str]) -> Dict[str, Any]:
    """Ensure a section is a mapping with only known keys."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, path: str, default: float, integer: bool = False) -> Any:
    if key not in data:
        return default
    value = data[key]
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if integer:
        if not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")
        return value
    return float(value)


def _string(data: Dict[str, Any], key: str, path: str, default: Optional[str]) -> Optional[str]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def load_app_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys and
    wrongly typed values are rejected. Every section is optional and falls
    back to its defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    root = _check_section(raw_config, "config", {'storage', 'llm', 'cache', 'retrieval'})

    storage_data = _check_section(root.get('storage'), "storage", {'db_path'})
    storage = StorageConfig(
        db_path=_string(storage_data, 'db_path', "storage", StorageConfig.db_path),
    )

    llm_data = _check_section(
        root.get('llm'), "llm", {'model', 'timeout_seconds', 'question_count', 'enabled'}
    )
    enabled = llm_data.get('enabled', LLMConfig.enabled)
    if not isinstance(enabled, bool):
        raise ValueError("'enabled' in llm must be a boolean")
    llm = LLMConfig(
        model=_string(llm_data, 'model', "llm", LLMConfig.model),
        timeout_seconds=_number(llm_data, 'timeout_seconds', "llm", LLMConfig.timeout_seconds),
        question_count=_number(llm_data, 'question_count', "llm", LLMConfig.question_count, integer=True),
        enabled=enabled,
    )

    cache_data = _check_section(
        root.get('cache'), "cache", {'backend', 'redis_url', 'ttl_seconds', 'timeout_seconds'}
    )
    backend_str = _string(cache_data, 'backend', "cache", CacheBackend.MEMORY.value)
    try:
        backend = CacheBackend(backend_str.lower())
    except ValueError:
        valid_backends = [backend.value for backend in CacheBackend]
        raise ValueError(f"'backend' in cache must be one of: {valid_backends}")
    cache = CacheConfig(
        backend=backend,
        redis_url=_string(cache_data, 'redis_url', "cache", None),
        ttl_seconds=_number(cache_data, 'ttl_seconds', "cache", CacheConfig.ttl_seconds, integer=True),
        timeout_seconds=_number(cache_data, 'timeout_seconds', "cache", CacheConfig.timeout_seconds),
    )

    retrieval_data = _check_section(root.get('retrieval'), "retrieval", {'page_size'})
    retrieval = RetrievalConfig(
        page_size=_number(retrieval_data, 'page_size', "retrieval", RetrievalConfig.page_size, integer=True),
    )

    return AppConfig(storage=storage, llm=llm, cache=cache, retrieval=retrieval)
