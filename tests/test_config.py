"""Tests for YAML config loading and env overrides."""

import pytest
from pydantic import ValidationError

from agentvault.config import AgentVaultConfig, load_config, resolve_env_vars


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config()
        assert config.vault.mode == "development"
        assert config.cache.ttl_seconds == 300.0
        assert config.monitor.failed_tests_per_hour == 10

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "agentvault.yaml"
        path.write_text(
            "vault:\n  mode: production\n"
            "monitor:\n  failed_tests_per_hour: 4\n"
            "server:\n  port: 9000\n"
        )
        config = load_config(str(path))
        assert config.vault.mode == "production"
        assert config.monitor.failed_tests_per_hour == 4
        assert config.server.port == 9000

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_env_override(self, tmp_path, monkeypatch):
        path = tmp_path / "agentvault.yaml"
        path.write_text("cache:\n  ttl_seconds: 60\n")
        monkeypatch.setenv("AGENTVAULT_CACHE_TTL_SECONDS", "120")
        monkeypatch.setenv("AGENTVAULT_MONITOR_REVOKED_USAGE_THRESHOLD", "7")
        config = load_config(str(path))
        assert config.cache.ttl_seconds == 120
        assert config.monitor.revoked_usage_threshold == 7

    def test_master_secret_env_not_a_section(self, tmp_path, monkeypatch):
        """AGENTVAULT_MASTER_SECRET is not mistaken for a config section."""
        path = tmp_path / "agentvault.yaml"
        path.write_text("{}\n")
        monkeypatch.setenv("AGENTVAULT_MASTER_SECRET", "abc")
        assert load_config(str(path)) == AgentVaultConfig()

    def test_env_var_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AV_MODE", "test")
        path = tmp_path / "agentvault.yaml"
        path.write_text("vault:\n  mode: ${AV_MODE}\n")
        assert load_config(str(path)).vault.mode == "test"

    def test_invalid_threshold_rejected(self, tmp_path):
        path = tmp_path / "agentvault.yaml"
        path.write_text("monitor:\n  failed_tests_per_hour: 0\n")
        with pytest.raises(ValidationError):
            load_config(str(path))


def test_resolve_env_vars_missing_is_empty(monkeypatch):
    monkeypatch.delenv("AV_UNSET", raising=False)
    assert resolve_env_vars("a${AV_UNSET}b") == "ab"
