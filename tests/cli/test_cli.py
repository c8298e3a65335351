"""Integration tests for the CLI: end-to-end command execution."""

import base64
import json

import pytest
from typer.testing import CliRunner

from agentvault.cli.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_user_config(tmp_path, monkeypatch):
    """Keep config discovery away from the developer's real files."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestCLICommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "AgentVault" in result.stdout
        assert "Master secret source: ephemeral" in result.stdout

    def test_generate_secret(self):
        result = runner.invoke(app, ["generate-secret"])
        assert result.exit_code == 0
        assert len(base64.b64decode(result.stdout.strip())) == 32

    def test_types_json(self):
        """JSON output is parseable, including regex validators with brackets."""
        result = runner.invoke(app, ["types", "--json"])
        assert result.exit_code == 0
        listing = json.loads(result.stdout)
        by_type = {entry["type"]: entry for entry in listing}
        assert by_type["supabase"]["fieldValidators"]["url"] == r"^https://[a-z0-9-]+\.supabase\.co$"

    def test_types_table(self):
        result = runner.invoke(app, ["types"])
        assert result.exit_code == 0
        assert "Connection Types" in result.stdout

    def test_connections_empty(self):
        result = runner.invoke(app, ["connections", "--user", "user-1"])
        assert result.exit_code == 0, result.stdout
        assert "No connections found." in result.stdout

    def test_sweep(self):
        result = runner.invoke(app, ["sweep"])
        assert result.exit_code == 0, result.stdout
        assert "cache_entries: 0" in result.stdout
        assert "Sweep complete." in result.stdout

    def test_production_without_secret_exits(self, tmp_path):
        config_file = tmp_path / "prod.yaml"
        config_file.write_text("vault:\n  mode: production\n")
        result = runner.invoke(app, ["--config", str(config_file), "sweep"])
        assert result.exit_code == 1
        assert "Cannot open vault" in result.stdout


class TestConfigCommands:
    def test_show_with_file(self, tmp_path):
        config_file = tmp_path / "agentvault.yaml"
        config_file.write_text("cache:\n  ttl_seconds: 45\nserver:\n  port: 9100\n")
        result = runner.invoke(app, ["--config", str(config_file), "config", "show"])
        assert result.exit_code == 0
        assert "ttl_seconds: 45" in result.stdout
        assert "127.0.0.1:9100" in result.stdout

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "config", "show"])
        assert result.exit_code == 1
