"""Tests for main.py and sandbox_client_main.py argument handling and wiring."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

import main as backend_main
import sandbox_client_main
from local_sandbox.agent import LocalSandboxClient
from tests.conftest import TEST_TOKEN


class TestBackendArgs:

    def test_defaults(self):
        args = backend_main.parse_cli_args([])
        assert args.config == "config.yaml"
        assert args.host is None
        assert args.port is None
        assert args.validate_only is False

    def test_overrides_applied(self):
        args = SimpleNamespace(host="0.0.0.0", port=9000)
        cfg = backend_main.apply_runtime_overrides({"server": {"host": "127.0.0.1", "port": 8787}}, args)
        assert cfg["server"] == {"host": "0.0.0.0", "port": 9000}

    def test_overrides_on_empty_config(self):
        cfg = backend_main.apply_runtime_overrides(None, SimpleNamespace(host=None, port=None))
        assert cfg == {"server": {}}


class TestBuildStore:

    def test_tokens_loaded(self):
        store = backend_main.build_store({"local_sandbox": {"tokens": {"alice": TEST_TOKEN}, "liveness_seconds": 45}})
        assert store.verify_token(TEST_TOKEN) == "alice"
        assert store.liveness_seconds == 45

    def test_malformed_token_rejected(self):
        with pytest.raises(ValueError, match="alice"):
            backend_main.build_store({"local_sandbox": {"tokens": {"alice": "secret"}}})

    def test_server_settings(self):
        store = backend_main.build_store({})
        server = backend_main.build_server(
            {"server": {"port": 9999}, "local_sandbox": {"maintenance_interval_seconds": 5}}, store,
        )
        assert server.port == 9999
        assert server.host == "127.0.0.1"
        assert server.maintenance_interval_seconds == 5


@pytest.mark.asyncio
async def test_validate_only_prints_summary(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("TEST_ALICE_TOKEN", TEST_TOKEN)
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "server:\n  port: 8899\n"
        "local_sandbox:\n  tokens:\n    alice: \"${TEST_ALICE_TOKEN}\"\n",
        encoding="utf-8",
    )

    await backend_main.main(["--config", str(cfg), "--validate-only", "--host", "0.0.0.0"])

    out = capsys.readouterr().out
    assert "Config validation passed" in out
    assert "server: 0.0.0.0:8899" in out
    assert "local_sandbox.tokens: 1 user(s)" in out


class TestClientArgs:

    def test_defaults(self):
        args = sandbox_client_main.parse_cli_args(["--token", TEST_TOKEN])
        assert args.image == "hackeraidev/sandbox"
        assert args.dangerous is False
        assert args.convex_url == sandbox_client_main.DEFAULT_BACKEND_URL

    def test_build_client(self):
        args = sandbox_client_main.parse_cli_args([
            "--token", f"  {TEST_TOKEN} ", "--name", "Kali", "--image", "kalilinux/kali-rolling",
            "--convex-url", "http://backend:8787",
        ])
        client = sandbox_client_main.build_client(args)
        assert isinstance(client, LocalSandboxClient)
        assert client.config.token == TEST_TOKEN
        assert client.config.name == "Kali"
        assert client.config.image == "kalilinux/kali-rolling"
        assert client.config.backend_url == "http://backend:8787"

    def test_name_defaults_to_hostname(self, monkeypatch):
        monkeypatch.setattr(sandbox_client_main.socket, "gethostname", lambda: "my-host")
        client = sandbox_client_main.build_client(sandbox_client_main.parse_cli_args(["--token", TEST_TOKEN]))
        assert client.config.name == "my-host"
        assert client.config.dangerous is False


@pytest.mark.asyncio
async def test_client_requires_token():
    assert await sandbox_client_main.main([]) == 1
