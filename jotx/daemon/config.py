"""Configuration models for jotx."""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError


DEFAULT_HOME = Path.home() / ".jotx"
CONFIG_FILENAME = "config.yaml"
DB_FILENAME = "jotx.db"

PRIVACY_CATEGORIES = ("contains", "starts_with", "ends_with", "regex", "exclude_folders")


def jotx_home() -> Path:
    """Data directory, overridable with ``JOTX_HOME``."""
    override = os.environ.get("JOTX_HOME")
    if override:
        return Path(override).expanduser()
    return DEFAULT_HOME


def default_config_path() -> Path:
    return jotx_home() / CONFIG_FILENAME


class Settings(BaseModel):
    capture_clipboard: bool = True
    capture_shell: bool = True
    capture_shell_history_with_files: bool = False
    shell_case_sensitive: bool = False
    clipboard_case_sensitive: bool = False
    clipboard_limit: int = 10000
    shell_limit: int = 5000

    @field_validator('clipboard_limit', 'shell_limit')
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention limit must be at least 1")
        return v


class PrivacyConfig(BaseModel):
    """Exclusion rules. An entry matching any rule is never stored."""
    contains: List[str] = Field(default_factory=lambda: ["password"])
    starts_with: List[str] = Field(default_factory=lambda: ["jot ", "jotx"])
    ends_with: List[str] = Field(default_factory=list)
    regex: List[str] = Field(default_factory=list)
    exclude_folders: List[str] = Field(default_factory=lambda: [".git", "node_modules"])

    def rule_count(self) -> int:
        return sum(len(getattr(self, category)) for category in PRIVACY_CATEGORIES)


class SearchConfig(BaseModel):
    similarity_threshold: float = 0.5
    max_results: int = 10
    fuzzy_matching: bool = True
    min_semantic_results: int = 3

    @field_validator('similarity_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("similarity_threshold must be between 0 and 1")
        return v

    @field_validator('max_results', 'min_semantic_results')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class LLMConfig(BaseModel):
    provider: str = "ollama"
    api_base: str = "http://localhost:11434"
    model: str = "qwen2.5:3b"
    max_tokens: int = 500
    temperature: float = 0.3
    max_history_results: int = 10
    timeout_s: float = 30.0

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v != "ollama":
            raise ValueError(f"unsupported LLM provider: {v}")
        return v

    @field_validator('temperature')
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0 <= v <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return v

    @field_validator('max_tokens', 'max_history_results')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class EmbeddingConfig(BaseModel):
    provider: str = "sentence-transformers"
    model: str = "all-MiniLM-L6-v2"
    dim: int = 384
    max_chars: int = 512

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in ("sentence-transformers", "hash"):
            raise ValueError(f"unsupported embedding provider: {v}")
        return v


class IndexingConfig(BaseModel):
    queue_size: int = 1000
    high_water: int = 800
    max_retries: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 60.0
    rescan_interval_s: float = 30.0

    @model_validator(mode='after')
    def validate_high_water(self) -> "IndexingConfig":
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if not 0 < self.high_water <= self.queue_size:
            raise ValueError("high_water must be between 1 and queue_size")
        return self


class CaptureConfig(BaseModel):
    timeout_ms: int = 50


class StorageConfig(BaseModel):
    maintenance_interval_days: int = 7


class ApiConfig(BaseModel):
    host: str = "localhost"
    port: int = 8765


class Config(BaseModel):
    """Main configuration for the jotx daemon."""

    data_dir: Path = Field(default_factory=jotx_home)
    settings: Settings = Field(default_factory=Settings)
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.exists():
            logger.info(f"Data directory does not exist, creating: {v}")
            v.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML, falling back to defaults when absent."""
        if config_path is None:
            config_path = default_config_path()

        if not config_path.exists():
            logger.info(f"No config file at {config_path}, using defaults")
            return cls(data_dir=config_path.parent)

        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {config_path}: {e}") from e

        data.setdefault("data_dir", str(config_path.parent))
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config {config_path}: {e}") from e

    def save(self, config_path: Path) -> None:
        """Write configuration to YAML atomically."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = config_path.with_name(config_path.name + ".tmp")
        with open(tmp_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, config_path)
