"""
Tests for the mastery engine configuration module.
"""

import logging
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mastery_config import (
    ApplicationConfig,
    Environment,
    GraphBackend,
    LogLevel,
    MasteryConfig,
    Neo4jConfig,
    RecordBackend,
    RedisConfig,
    RuntimeConfig,
    get_config,
    get_log_level,
    is_redis_enabled,
    reload_config,
)


class TestMasteryConfig:
    """Test mastery tunables."""

    def test_default_values(self):
        """Test default configuration values."""
        config = MasteryConfig()
        assert config.decay_rate == 0.1
        assert config.min_ease_factor == 1.3
        assert config.max_ease_factor == 3.0
        assert config.default_ease_factor == 2.5
        assert config.default_mastery == 0.0
        assert config.correct_step == 0.3
        assert config.incorrect_step == -0.2
        assert config.min_propagation_change == 0.001
        assert config.forward_weight_factor == 0.5
        assert config.propagation_max_depth == 1
        assert config.weakness_threshold == 0.5

    def test_env_override(self):
        """Test environment variable override."""
        with patch.dict(os.environ, {
            "MASTERY_DECAY_RATE": "0.2",
            "MASTERY_PROPAGATION_MAX_DEPTH": "3",
        }):
            config = MasteryConfig()
            assert config.decay_rate == 0.2
            assert config.propagation_max_depth == 3

    def test_ease_bounds_validation(self):
        """Test that inverted ease bounds are rejected."""
        with pytest.raises(ValidationError):
            MasteryConfig(min_ease_factor=3.5, max_ease_factor=3.0)

    def test_default_ease_within_bounds(self):
        """Test that the default ease must lie within the bounds."""
        with pytest.raises(ValidationError):
            MasteryConfig(default_ease_factor=3.5)

    def test_depth_limits(self):
        """Test propagation depth limits."""
        with pytest.raises(ValidationError):
            MasteryConfig(propagation_max_depth=0)
        with pytest.raises(ValidationError):
            MasteryConfig(propagation_max_depth=9)

    def test_incorrect_step_must_not_be_positive(self):
        with pytest.raises(ValidationError):
            MasteryConfig(incorrect_step=0.2)


class TestBackendConfig:
    """Test store backend settings."""

    def test_redis_defaults(self):
        config = RedisConfig()
        assert config.url == "redis://localhost:6379/0"
        assert config.max_connections == 20
        assert config.key_prefix == ""

    def test_neo4j_password_optional(self):
        """Test that Neo4j settings load without a password."""
        config = Neo4jConfig()
        assert config.password is None

    def test_neo4j_uri_validation(self):
        """Test URI validation."""
        for uri in ["bolt://localhost:7687", "neo4j+s://secure.neo4j.com:7687"]:
            assert Neo4jConfig(uri=uri).uri == uri

        with pytest.raises(ValidationError):
            Neo4jConfig(uri="http://localhost:7687")

    def test_application_backends(self):
        """Test backend selection from the environment."""
        with patch.dict(os.environ, {
            "APP_RECORD_BACKEND": "redis",
            "APP_GRAPH_BACKEND": "neo4j",
            "APP_ENV": "production",
        }):
            config = ApplicationConfig()
            assert config.record_backend == RecordBackend.REDIS
            assert config.graph_backend == GraphBackend.NEO4J
            assert config.env == Environment.PRODUCTION


class TestRuntimeConfig:
    """Test runtime configuration container."""

    def test_to_dict_reports_environment(self):
        config = RuntimeConfig(app=ApplicationConfig(env=Environment.TESTING))
        exported = config.to_dict()
        assert exported["environment"] == "testing"
        assert "debug" not in exported

    def test_neo4j_driver_config(self):
        """Test driver keyword arguments."""
        config = RuntimeConfig(neo4j=Neo4jConfig(password="secret"))
        driver_config = config.get_neo4j_config()
        assert driver_config["uri"] == "bolt://localhost:7687"
        assert driver_config["auth"] == ("neo4j", "secret")
        assert config.validate_neo4j_connection()

    def test_neo4j_incomplete_without_password(self):
        config = RuntimeConfig(neo4j=Neo4jConfig())
        assert not config.validate_neo4j_connection()
        assert config.get_neo4j_config()["auth"] == ("neo4j", "")

    def test_to_dict_hides_secrets(self):
        """Test that secrets are only exported on request."""
        config = RuntimeConfig(neo4j=Neo4jConfig(password="secret"))
        assert "password" not in config.to_dict()["neo4j"]
        assert config.to_dict(include_secrets=True)["neo4j"]["password"] == "secret"
        assert config.to_dict()["mastery"]["decay_rate"] == 0.1

    def test_reload(self):
        """Test reloading from the environment."""
        config = RuntimeConfig()
        with patch.dict(os.environ, {"MASTERY_DECAY_RATE": "0.05"}):
            config.reload()
        assert config.mastery.decay_rate == 0.05


class TestHelpers:
    """Test module level helpers."""

    def test_get_config_is_global(self):
        assert get_config() is get_config()

    def test_reload_config(self):
        with patch.dict(os.environ, {"APP_LOG_LEVEL": "DEBUG"}):
            reload_config()
            assert get_config().app.log_level == LogLevel.DEBUG
            assert get_log_level() == logging.DEBUG
        reload_config()

    def test_is_redis_enabled(self):
        with patch.dict(os.environ, {"APP_RECORD_BACKEND": "redis"}):
            reload_config()
            assert is_redis_enabled()
        reload_config()
        assert not is_redis_enabled()
