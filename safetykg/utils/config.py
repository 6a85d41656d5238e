"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """Chat-completion configuration used by the extraction pass."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "glm-4.7"
    temperature: float = 0.3
    max_tokens: int = 30000
    timeout: int = 300
    retry_attempts: int = 3
    retry_delay_seconds: float = 2.0
    base_url: str | None = None
    api_key: str | None = None

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class EmbeddingConfig(BaseSettings):
    """Embedding provider configuration."""

    provider: Literal["local", "openai"] = "openai"
    model: str = "embedding-3"
    dimension: int = 1024
    batch_size: int = 10
    base_url: str | None = None
    api_key: str | None = None
    max_tokens: int = 8191
    cache_size: int = Field(default=4096, ge=1)


class PDFConfig(BaseSettings):
    """PDF reader configuration."""

    ocr_enabled: bool = False


class IngestionConfig(BaseSettings):
    """Document parsing configuration."""

    max_files_per_task: int = 10
    preview_chars: int = 2000
    excel_max_rows: int = 2000
    header_scan_rows: int = 30
    txt_encodings: List[str] = ["utf-8", "gbk", "gb2312", "gb18030", "latin-1"]
    pdf: PDFConfig = Field(default_factory=PDFConfig)


class ExtractionConfig(BaseSettings):
    """Knowledge extraction configuration."""

    enable_llm: bool = True
    prompt_template: str = "config/extraction_prompts.yaml"
    chunk_max_chars: int = 4000
    default_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    enable_risk_register_fallback: bool = True
    llm: LLMConfig = Field(default_factory=LLMConfig)


class AlignmentConfig(BaseSettings):
    """Entity alignment thresholds."""

    auto_merge_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    candidate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_candidates: int = 3
    batch_size: int = 10
    default_dimension: int = 1024


class GraphConfig(BaseSettings):
    """Graph read/write limits."""

    default_query_limit: int = 100
    max_query_limit: int = 500
    max_network_depth: int = 5
    prefer_apoc: bool = True
    backend: Literal["neo4j", "memory"] = "neo4j"


class StorageConfig(BaseSettings):
    """Document store configuration."""

    backend: Literal["memory", "json"] = "json"
    data_dir: str = "data/store"
    cache_size: int = 256
    cache_ttl_seconds: float = 30.0


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str | None = "logs/safetykg.log"
    max_size_mb: int = 100
    backup_count: int = 5


class DatabaseConfig(BaseSettings):
    """Neo4j connection settings from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_user: str = Field(default="neo4j")
    neo4j_password: str = Field(default="password")
    neo4j_database: str = Field(default="neo4j")
    neo4j_max_pool_size: int = Field(default=50)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    alignment: AlignmentConfig = Field(default_factory=AlignmentConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Environment variables
    llm_api_key: str = ""
    llm_base_url: str = ""

    upload_path: Path = Field(default=Path("data/uploads"))

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win)."""
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If the YAML root is not a mapping
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Nested DatabaseConfig does not see plain NEO4J_* env vars through the
        # parent model, so its overrides are computed separately.
        env_overrides = cls().model_dump(exclude_defaults=True)

        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            yaml_db = yaml_config.get("database", {})
            env_overrides["database"] = cls._deep_merge_dict(
                yaml_db if isinstance(yaml_db, dict) else {}, db_env_overrides
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)
        return cls(**merged)

    def resolved_llm_config(self) -> LLMConfig:
        """Return the extraction LLM config with top-level credentials filled in."""
        llm = self.extraction.llm.model_copy()
        if not llm.api_key and self.llm_api_key:
            llm.api_key = self.llm_api_key
        if not llm.base_url and self.llm_base_url:
            llm.base_url = self.llm_base_url
        return llm

    def resolved_embedding_config(self) -> EmbeddingConfig:
        """Return the embedding config, falling back to the LLM credentials."""
        embedding = self.embedding.model_copy()
        if not embedding.api_key and self.llm_api_key:
            embedding.api_key = self.llm_api_key
        if not embedding.base_url and self.llm_base_url:
            embedding.base_url = self.llm_base_url
        return embedding

    def validate_config(self) -> None:
        """Validate configuration settings.

        Raises:
            ValueError: If configuration is invalid
        """
        self.upload_path.mkdir(parents=True, exist_ok=True)

        if self.alignment.candidate_threshold > self.alignment.auto_merge_threshold:
            raise ValueError(
                "alignment.candidate_threshold must not exceed alignment.auto_merge_threshold"
            )
        if self.graph.default_query_limit > self.graph.max_query_limit:
            raise ValueError("graph.default_query_limit must not exceed graph.max_query_limit")


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
