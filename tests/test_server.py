"""Tests for configuration and the server entry point."""

import socket

import pytest

from shellgate_commands import PlaceholderCommandResolver, StaticCommandResolver
from shellgate_config import DEFAULT_PORT, GatewayConfig
from shellgate_core import KeyMaterial
from shellgate_server import build_resolver, main, parse_arguments


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("HOST", "PORT", "HOST_KEY", "USERS_DIR", "COMMAND", "POD", "DEBUG"):
        monkeypatch.delenv(f"SHELLGATE_{name}", raising=False)


@pytest.fixture
def host_key(tmp_path):
    private_key, _ = KeyMaterial.generate_keys(1024)
    path = tmp_path / "id_rsa"
    path.write_bytes(KeyMaterial.serialize_private_key(private_key))
    return str(path)


class TestConfig:
    """Tests for environment and command line configuration."""

    def test_defaults(self, clean_env):
        config = parse_arguments([])
        assert config.host == "0.0.0.0"
        assert config.port == DEFAULT_PORT == 2200
        assert config.host_key_path == "id_rsa"
        assert config.command is None
        assert config.debug is False

    def test_environment_overrides_defaults(self, clean_env, monkeypatch):
        monkeypatch.setenv("SHELLGATE_PORT", "2022")
        monkeypatch.setenv("SHELLGATE_COMMAND", "/bin/sh")
        monkeypatch.setenv("SHELLGATE_DEBUG", "yes")
        config = GatewayConfig().load_from_env()
        assert config.port == 2022
        assert config.command == "/bin/sh"
        assert config.debug is True

    def test_flags_override_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("SHELLGATE_PORT", "2022")
        config = parse_arguments(["--port", "2300", "--host", "127.0.0.1", "--debug"])
        assert config.port == 2300
        assert config.host == "127.0.0.1"
        assert config.debug is True

    def test_command_and_pod_are_exclusive(self, clean_env):
        with pytest.raises(SystemExit):
            parse_arguments(["--command", "bash", "--pod", "web-0"])

    def test_resolver_selection(self):
        assert isinstance(build_resolver(GatewayConfig(command="cat")), StaticCommandResolver)
        resolver = build_resolver(GatewayConfig(pod="web-0"))
        assert isinstance(resolver, PlaceholderCommandResolver)
        assert resolver.pod == "web-0"


class TestStartup:
    """Tests for fatal startup errors."""

    def test_missing_host_key_is_fatal(self, clean_env, tmp_path):
        assert main(["--host-key", str(tmp_path / "missing"), "--port", "0"]) == 1

    def test_unparsable_host_key_is_fatal(self, clean_env, tmp_path):
        path = tmp_path / "id_rsa"
        path.write_text("garbage")
        assert main(["--host-key", str(path), "--port", "0"]) == 1

    def test_bind_failure_is_fatal(self, clean_env, host_key):
        taken = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        taken.bind(("127.0.0.1", 0))
        taken.listen(1)
        try:
            port = taken.getsockname()[1]
            assert main(["--host-key", host_key, "--host", "127.0.0.1", "--port", str(port)]) == 1
        finally:
            taken.close()
