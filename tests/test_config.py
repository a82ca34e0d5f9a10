"""Tests for configuration loading and validation."""

import os
import pytest
import tempfile

from rollout.config import (
    Config,
    DeviceApiConfig,
    ProbeConfig,
    UpdateConfig,
    expand_env_vars,
    get_config,
    load_config,
    set_config,
)


class TestConfigDefaults:
    """Tests for default configuration values."""

    def test_probe_config_defaults(self):
        """Probe timeout defaults to 5 seconds."""
        config = ProbeConfig()
        assert config.timeout == 5.0

    def test_update_config_defaults(self):
        """Test UpdateConfig has correct defaults."""
        config = UpdateConfig()
        assert config.poll_interval == 3.0
        assert config.upload_timeout == 300.0
        assert config.request_timeout == 10.0
        assert config.chunk_size == 64 * 1024

    def test_device_api_defaults(self):
        """Endpoints match the device update API."""
        config = DeviceApiConfig()
        assert config.scheme == "http"
        assert config.status_path == "/update/status"
        assert config.upload_path == "/update"
        assert config.start_path == "/update/start"
        assert config.upload_field == "file"

    def test_full_config_defaults(self):
        """Test full Config has all sections with defaults."""
        config = Config()
        assert config.probe.timeout == 5.0
        assert config.update.poll_interval == 3.0
        assert config.device_api.scheme == "http"
        assert config.logging.level == "INFO"
        assert config.logging.file is None


class TestConfigValidation:
    """Tests for configuration validation."""

    def test_probe_timeout_validation(self):
        """Probe timeout must be positive and bounded."""
        ProbeConfig(timeout=0.5)
        ProbeConfig(timeout=120)

        with pytest.raises(ValueError):
            ProbeConfig(timeout=0)
        with pytest.raises(ValueError):
            ProbeConfig(timeout=121)

    def test_poll_interval_validation(self):
        """Poll interval must be positive."""
        with pytest.raises(ValueError):
            UpdateConfig(poll_interval=0)
        with pytest.raises(ValueError):
            UpdateConfig(poll_interval=-1)

    def test_chunk_size_validation(self):
        """Tiny upload chunks are rejected."""
        with pytest.raises(ValueError):
            UpdateConfig(chunk_size=100)

    def test_scheme_validation(self):
        """Only http and https are accepted; case is normalized."""
        assert DeviceApiConfig(scheme="HTTPS").scheme == "https"
        with pytest.raises(ValueError):
            DeviceApiConfig(scheme="ftp")

    def test_paths_get_leading_slash(self):
        """Endpoint paths are normalized to start with a slash."""
        config = DeviceApiConfig(status_path="api/status", upload_path="/fw")
        assert config.status_path == "/api/status"
        assert config.upload_path == "/fw"


class TestEnvVarExpansion:
    """Tests for environment variable expansion."""

    def test_expand_simple_env_var(self):
        """Test expanding simple environment variables."""
        os.environ["TEST_VAR"] = "test_value"
        try:
            assert expand_env_vars("${TEST_VAR}") == "test_value"
        finally:
            del os.environ["TEST_VAR"]

    def test_expand_env_var_in_nested_dict(self):
        """Test expanding environment variables in nested structures."""
        os.environ["ROLLOUT_LOG"] = "/tmp/rollout.log"
        try:
            result = expand_env_vars({"logging": {"file": "${ROLLOUT_LOG}", "level": "INFO"}})
            assert result == {"logging": {"file": "/tmp/rollout.log", "level": "INFO"}}
        finally:
            del os.environ["ROLLOUT_LOG"]

    def test_expand_env_var_in_list(self):
        """Test expanding environment variables in lists."""
        os.environ["ITEM1"] = "value1"
        try:
            assert expand_env_vars(["${ITEM1}", "plain"]) == ["value1", "plain"]
        finally:
            del os.environ["ITEM1"]

    def test_undefined_env_var_kept_as_is(self):
        """Test that undefined environment variables are kept as-is."""
        assert expand_env_vars("${UNDEFINED_VAR_12345}") == "${UNDEFINED_VAR_12345}"

    def test_non_string_values_untouched(self):
        assert expand_env_vars({"timeout": 5, "enabled": True}) == {"timeout": 5, "enabled": True}


class TestConfigLoading:
    """Tests for loading configuration from files."""

    def test_load_config_file_not_found(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yaml")

    def test_load_minimal_config(self):
        """Unspecified sections fall back to defaults."""
        config_yaml = """
probe:
  timeout: 2.5
update:
  poll_interval: 1
"""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(config_yaml)
            config_path = f.name

        try:
            config = load_config(config_path)
            assert config.probe.timeout == 2.5
            assert config.update.poll_interval == 1.0
            assert config.update.request_timeout == 10.0
            assert config.device_api.upload_field == "file"
        finally:
            os.unlink(config_path)

    def test_load_empty_config(self):
        """An empty YAML file yields the default config."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            config_path = f.name

        try:
            config = load_config(config_path)
            assert config == Config()
        finally:
            os.unlink(config_path)

    def test_load_config_with_env_file(self):
        """Variables from the .env file are expanded into the config."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.env', delete=False) as f:
            f.write("ROLLOUT_TEST_SCHEME=https\n")
            env_path = f.name

        config_yaml = """
device_api:
  scheme: ${ROLLOUT_TEST_SCHEME}
"""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(config_yaml)
            config_path = f.name

        try:
            config = load_config(config_path, env_file=env_path)
            assert config.device_api.scheme == "https"
        finally:
            os.unlink(config_path)
            os.unlink(env_path)
            if "ROLLOUT_TEST_SCHEME" in os.environ:
                del os.environ["ROLLOUT_TEST_SCHEME"]

    def test_invalid_values_rejected(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("probe:\n  timeout: -1\n")
            config_path = f.name

        try:
            with pytest.raises(ValueError):
                load_config(config_path)
        finally:
            os.unlink(config_path)


class TestGlobalConfig:

    def test_set_and_get_config(self):
        config = Config(probe=ProbeConfig(timeout=1.0))
        set_config(config)
        assert get_config() is config

    def test_get_config_before_load(self, monkeypatch):
        monkeypatch.setattr("rollout.config._config", None)
        with pytest.raises(RuntimeError):
            get_config()
