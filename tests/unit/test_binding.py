"""Unit tests for the server entry point: loopback default and uvicorn hardening."""

from __future__ import annotations

from typing import Any

import pytest

import crmguard.run as run_module
from crmguard.config import Config, ServerConfig
from crmguard.run import UVICORN_BACKLOG, UVICORN_LIMIT_CONCURRENCY, UVICORN_TIMEOUT_KEEP_ALIVE


class TestDefaultBinding:
    def test_default_host_is_loopback(self) -> None:
        assert Config.defaults().server.host == "127.0.0.1"

    def test_all_interfaces_must_be_explicit(self) -> None:
        config = Config(server=ServerConfig(host="0.0.0.0"))
        assert config.server.host == "0.0.0.0"
        assert Config.defaults().server.host != "0.0.0.0"


class TestMain:
    def test_runs_uvicorn_with_config_binding(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
        config = Config(server=ServerConfig(host="127.0.0.1", port=5151))
        monkeypatch.setattr(run_module, "load_config", lambda: config)
        monkeypatch.setattr(run_module.uvicorn, "run", lambda *a, **kw: calls.append((a, kw)))

        run_module.main()

        [(args, kwargs)] = calls
        assert args == ("crmguard.main:app",)
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 5151
        assert kwargs["limit_concurrency"] == UVICORN_LIMIT_CONCURRENCY == 100
        assert kwargs["backlog"] == UVICORN_BACKLOG == 50
        assert kwargs["timeout_keep_alive"] == UVICORN_TIMEOUT_KEEP_ALIVE == 5
