"""Tests for the typer CLI."""

import json

import pytest
import respx
from httpx import Response
from typer.testing import CliRunner

from maas_cli.cli import app

runner = CliRunner()

AUTH_BASE = "http://auth.test"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    config_dir = tmp_path / "maas"
    monkeypatch.setenv("MAAS_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("SKIP_SERVICE_DISCOVERY", "true")
    monkeypatch.setenv("MAAS_AUTH_BASE", AUTH_BASE)
    monkeypatch.setenv("MAAS_MEMORY_BASE", "http://api.test/api/v1")
    monkeypatch.delenv("LANONASIS_API_KEY", raising=False)
    monkeypatch.delenv("MEMORY_API_URL", raising=False)
    monkeypatch.delenv("MAAS_MCP_SERVER_PATH", raising=False)
    return config_dir


def _config(config_dir) -> dict:
    return json.loads((config_dir / "config.json").read_text())


class TestAuthCommands:
    @respx.mock
    def test_vendor_key_then_status(self, isolated_env):
        respx.get(f"{AUTH_BASE}/api/v1/health").mock(return_value=Response(200))

        result = runner.invoke(app, ["auth", "vendor-key", "pk_test123.sk_secret456"])
        assert result.exit_code == 0, result.output
        assert "pk_t…" in result.output
        assert "sk_secret456" not in result.output
        assert _config(isolated_env)["vendorKey"]["encrypted"] is True

        result = runner.invoke(app, ["auth", "status"])
        assert result.exit_code == 0
        assert "vendor_key" in result.output
        assert "Yes" in result.output

    @respx.mock
    def test_rejected_vendor_key_shows_remediation(self):
        respx.get(f"{AUTH_BASE}/api/v1/health").mock(return_value=Response(401))

        result = runner.invoke(app, ["auth", "vendor-key", "pk_bad.sk_bad"])

        assert result.exit_code == 1
        assert "AuthenticationInvalid: Vendor key is invalid" in result.output
        assert "maas auth login" in result.output

    def test_malformed_vendor_key(self):
        result = runner.invoke(app, ["auth", "vendor-key", "short"])
        assert result.exit_code == 1
        assert "ValidationError" in result.output

    @respx.mock
    def test_login_and_logout(self, isolated_env):
        respx.post(f"{AUTH_BASE}/v1/auth/login").mock(
            return_value=Response(200, json={"token": "session-token", "user": {"email": "dev@example.com"}})
        )

        result = runner.invoke(app, ["auth", "login", "--email", "dev@example.com", "--password", "pw"])
        assert result.exit_code == 0, result.output
        assert "dev@example.com" in result.output
        assert _config(isolated_env)["token"] == "session-token"

        result = runner.invoke(app, ["auth", "logout"])
        assert result.exit_code == 0
        assert "token" not in _config(isolated_env)

    def test_status_without_credentials(self):
        result = runner.invoke(app, ["auth", "status"])
        assert result.exit_code == 0
        assert "none" in result.output


class TestConfigCommands:
    def test_set_get_and_path(self, isolated_env):
        result = runner.invoke(app, ["config", "set", "mcpConnectionMode", "remote"])
        assert result.exit_code == 0, result.output
        assert _config(isolated_env)["mcpConnectionMode"] == "remote"

        result = runner.invoke(app, ["config", "get", "mcpConnectionMode"])
        assert result.stdout.strip() == "remote"

        result = runner.invoke(app, ["config", "path"])
        assert "config.json" in result.output

    def test_invalid_value_rejected(self):
        result = runner.invoke(app, ["config", "set", "mcpConnectionMode", "pigeon"])
        assert result.exit_code == 1
        assert "ValidationError" in result.output

    def test_secrets_not_settable(self):
        result = runner.invoke(app, ["config", "set", "token", "abc"])
        assert result.exit_code == 1

    def test_missing_key(self):
        result = runner.invoke(app, ["config", "get", "mcpServerUrl"])
        assert result.exit_code == 1
        assert "not set" in result.output

    def test_discover_with_skip_uses_environment_endpoints(self):
        result = runner.invoke(app, ["config", "discover"])
        assert result.exit_code == 0, result.output
        assert AUTH_BASE in result.output
        assert "environment" in result.output


class TestMcpCommands:
    def test_connect_without_credentials(self):
        result = runner.invoke(app, ["mcp", "connect"])
        assert result.exit_code == 1
        assert "AuthenticationRequired" in result.output

    def test_call_rejects_bad_json(self):
        result = runner.invoke(app, ["mcp", "call", "memory_search_memories", "--args", "{nope"])
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_status_shows_default_mode(self):
        result = runner.invoke(app, ["mcp", "status"])
        assert result.exit_code == 0
        assert "websocket (default)" in result.output

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "maas-cli" in result.output
