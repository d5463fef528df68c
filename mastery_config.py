"""
Configuration module for the mastery tracking engine.

This module provides environment configuration management for the decay and
scheduling constants, the record and graph store backends, and application
level settings such as logging.
"""

import logging
from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic.types import conint, confloat
from pydantic_settings import BaseSettings, SettingsConfigDict


# Load environment variables from .env file
load_dotenv()


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging level configuration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RecordBackend(str, Enum):
    """Backends available for mastery record persistence."""
    MEMORY = "memory"
    REDIS = "redis"


class GraphBackend(str, Enum):
    """Backends available for reading a learner's knowledge graph."""
    MEMORY = "memory"
    RECORD = "record"
    NEO4J = "neo4j"


class MasteryConfig(BaseSettings):
    """Decay, scheduling and propagation tunables.

    These are process-wide constants, never per-user state.
    """

    model_config = SettingsConfigDict(env_prefix="MASTERY_", case_sensitive=False)

    # Forgetting curve
    decay_rate: confloat(ge=0) = Field(
        default=0.1,
        description="Decay constant k in stored * exp(-k * days)"
    )

    # SM-2 ease factor
    min_ease_factor: confloat(gt=0) = Field(
        default=1.3,
        description="Lower bound for the ease factor"
    )
    max_ease_factor: confloat(gt=0) = Field(
        default=3.0,
        description="Upper bound for the ease factor"
    )
    default_ease_factor: confloat(gt=0) = Field(
        default=2.5,
        description="Ease factor assigned to new records"
    )
    ease_bonus: confloat(ge=0) = Field(
        default=0.1,
        description="Ease increase after a correct answer"
    )
    ease_penalty: confloat(ge=0) = Field(
        default=0.2,
        description="Ease decrease after an incorrect answer"
    )

    # Mastery blending
    default_mastery: confloat(ge=0, le=1) = Field(
        default=0.0,
        description="Mastery score assigned to new records"
    )
    default_confidence: confloat(ge=0, le=1) = Field(
        default=0.3,
        description="Confidence assigned to new records"
    )
    confidence_gain: confloat(ge=0, le=1) = Field(
        default=0.1,
        description="Confidence increase per interaction"
    )
    correct_step: confloat(ge=0, le=1) = Field(
        default=0.3,
        description="Mastery increase for a correct answer"
    )
    partial_step: confloat(ge=0, le=1) = Field(
        default=0.1,
        description="Mastery increase for a partially correct answer"
    )
    incorrect_step: confloat(ge=-1, le=0) = Field(
        default=-0.2,
        description="Mastery change for an incorrect answer"
    )

    # Propagation
    min_propagation_change: confloat(ge=0) = Field(
        default=0.001,
        description="Changes smaller than this are not written"
    )
    forward_weight_factor: confloat(ge=0, le=1) = Field(
        default=0.5,
        description="Multiplier applied to default weights on outgoing edges"
    )
    propagation_max_depth: conint(ge=1, le=5) = Field(
        default=1,
        description="Number of hops a mastery change travels"
    )
    weakness_threshold: confloat(ge=0, le=1) = Field(
        default=0.5,
        description="Effective mastery below which a prerequisite is weak"
    )

    @model_validator(mode="after")
    def validate_ease_bounds(self) -> "MasteryConfig":
        """Ensure the ease bounds are ordered and contain the default."""
        if self.min_ease_factor > self.max_ease_factor:
            raise ValueError(
                f"min_ease_factor ({self.min_ease_factor}) exceeds "
                f"max_ease_factor ({self.max_ease_factor})"
            )
        if not self.min_ease_factor <= self.default_ease_factor <= self.max_ease_factor:
            raise ValueError(
                f"default_ease_factor ({self.default_ease_factor}) must be within "
                f"[{self.min_ease_factor}, {self.max_ease_factor}]"
            )
        return self


class RedisConfig(BaseSettings):
    """Redis record store configuration settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False)

    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    max_connections: conint(gt=0) = Field(
        default=20,
        description="Maximum connection pool size"
    )
    key_prefix: str = Field(
        default="",
        description="Optional prefix prepended to every key"
    )


class Neo4jConfig(BaseSettings):
    """Neo4j graph store configuration settings."""

    model_config = SettingsConfigDict(env_prefix="NEO4J_", case_sensitive=False)

    uri: str = Field(
        default="bolt://localhost:7687",
        description="Neo4j connection URI"
    )
    user: str = Field(
        default="neo4j",
        description="Neo4j username"
    )
    password: Optional[SecretStr] = Field(
        default=None,
        description="Neo4j password"
    )
    database: str = Field(
        default="neo4j",
        description="Neo4j database name"
    )
    max_connection_lifetime: conint(gt=0) = Field(
        default=3600,
        description="Maximum connection lifetime in seconds"
    )
    max_connection_pool_size: conint(gt=0) = Field(
        default=50,
        description="Maximum connection pool size"
    )
    connection_acquisition_timeout: conint(gt=0) = Field(
        default=60,
        description="Connection acquisition timeout in seconds"
    )

    @field_validator("uri")
    @classmethod
    def validate_uri(cls, v: str) -> str:
        """Validate Neo4j URI format."""
        valid_schemes = ["bolt", "bolt+s", "bolt+ssc", "neo4j", "neo4j+s", "neo4j+ssc"]
        scheme = v.split("://")[0].lower()
        if scheme not in valid_schemes:
            raise ValueError(f"Invalid Neo4j URI scheme: {scheme}. Must be one of {valid_schemes}")
        return v


class ApplicationConfig(BaseSettings):
    """Main application configuration settings."""

    model_config = SettingsConfigDict(env_prefix="APP_", case_sensitive=False)

    env: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )
    record_backend: RecordBackend = Field(
        default=RecordBackend.MEMORY,
        description="Where mastery records are persisted"
    )
    graph_backend: GraphBackend = Field(
        default=GraphBackend.RECORD,
        description="Where knowledge graphs are read from"
    )


@dataclass
class RuntimeConfig:
    """Runtime configuration container combining all config sections."""

    mastery: MasteryConfig = field(default_factory=MasteryConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    app: ApplicationConfig = field(default_factory=ApplicationConfig)

    def reload(self):
        """Reload configuration from environment variables."""
        self.mastery = MasteryConfig()
        self.redis = RedisConfig()
        self.neo4j = Neo4jConfig()
        self.app = ApplicationConfig()

    def get_neo4j_config(self) -> Dict[str, Any]:
        """Get Neo4j driver configuration dict."""
        password = self.neo4j.password.get_secret_value() if self.neo4j.password else ""
        return {
            "uri": self.neo4j.uri,
            "auth": (self.neo4j.user, password),
            "max_connection_lifetime": self.neo4j.max_connection_lifetime,
            "max_connection_pool_size": self.neo4j.max_connection_pool_size,
            "connection_acquisition_timeout": self.neo4j.connection_acquisition_timeout,
        }

    def validate_neo4j_connection(self) -> bool:
        """Validate Neo4j configuration is complete."""
        return bool(
            self.neo4j.uri and
            self.neo4j.user and
            self.neo4j.password
        )

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        config = {
            "environment": self.app.env.value,
            "backends": {
                "records": self.app.record_backend.value,
                "graph": self.app.graph_backend.value,
            },
            "mastery": self.mastery.model_dump(),
            "redis": {
                "url": self.redis.url,
                "key_prefix": self.redis.key_prefix,
            },
            "neo4j": {
                "uri": self.neo4j.uri,
                "user": self.neo4j.user,
                "database": self.neo4j.database,
            },
        }

        if include_secrets and self.neo4j.password:
            config["neo4j"]["password"] = self.neo4j.password.get_secret_value()

        return config


# Global configuration instance
config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the global configuration instance."""
    return config


def reload_config() -> RuntimeConfig:
    """Reload configuration from environment."""
    config.reload()
    return config


def get_log_level() -> int:
    """Get the configured log level as a logging module constant."""
    return getattr(logging, config.app.log_level.value)


def is_redis_enabled() -> bool:
    """Check if mastery records are persisted in Redis."""
    return config.app.record_backend == RecordBackend.REDIS
