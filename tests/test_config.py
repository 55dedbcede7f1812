"""Tests for config.py environment variable parsing and OrchestratorConfig."""

import logging
import os
from pathlib import Path
from unittest import mock

import pytest


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 42) == 42
                assert "Invalid TEST_INT='abc'" in caplog.text

    def test_min_validation_enforced(self, caplog):
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 10, min_val=1) == 10
                assert "below minimum" in caplog.text

    def test_max_validation_enforced(self, caplog):
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "500"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 10, max_val=100) == 10
                assert "above maximum" in caplog.text


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan"])
    def test_rejects_special_floats(self, value, caplog):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": value}):
            with caplog.at_level(logging.WARNING):
                assert get_float_env("TEST_FLOAT", 1.0) == 1.0
                assert "special float" in caplog.text

    def test_returns_default_on_invalid_value(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "fast"}):
            assert get_float_env("TEST_FLOAT", 10.0) == 10.0

    def test_min_validation_enforced(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "0.01"}):
            assert get_float_env("TEST_FLOAT", 10.0, min_val=0.1) == 10.0


class TestOrchestratorConfig:
    """Tests for the explicit configuration object."""

    def test_defaults(self):
        from config import OrchestratorConfig

        config = OrchestratorConfig()

        assert config.operation_timeout == 10.0
        assert config.storage_backend == "local"
        assert config.jobs_stream == "videocmprs:conversion:jobs"
        assert config.results_stream == "videocmprs:conversion:results"
        assert config.dead_letter_stream == "videocmprs:conversion:dead-letter"

    def test_is_immutable(self):
        from dataclasses import FrozenInstanceError

        from config import OrchestratorConfig

        config = OrchestratorConfig()
        with pytest.raises(FrozenInstanceError):
            config.operation_timeout = 1.0

    def test_from_env_snapshots_module_settings(self):
        import config

        with mock.patch.object(config, "OPERATION_TIMEOUT", 3.5), mock.patch.object(
            config, "REDIS_STREAM_PREFIX", "staging"
        ), mock.patch.object(config, "STORAGE_PATH", Path("/tmp/blobs")):
            snapshot = config.OrchestratorConfig.from_env()

        assert snapshot.operation_timeout == 3.5
        assert snapshot.jobs_stream == "staging:conversion:jobs"
        assert snapshot.storage_path == Path("/tmp/blobs")
