from __future__ import annotations

import pytest

import board_server
import config
from board_sync import OrderBoard
from config import Config, ConfigurationError
from order_store import InMemoryOrderStore

ENV_KEYS = (
    "ORDER_STORE_BACKEND",
    "STORE_CALL_TIMEOUT_SECONDS",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "REFRESH_INTERVAL_SECONDS",
    "FETCH_TIMEOUT_SECONDS",
    "CONFIRM_TIMEOUT_SECONDS",
    "MAX_REFRESH_BACKOFF_SECONDS",
    "STUCK_REFRESH_LIMIT",
    "HOST",
    "PORT",
    "CORS_ORIGINS",
    "LOG_LEVEL",
    "DEBUG_MODE",
)


@pytest.fixture()
def env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ORDER_STORE_BACKEND", "memory")
    return monkeypatch


def test_defaults_with_memory_backend(env):
    cfg = Config()

    assert cfg.store.backend == "memory"
    assert cfg.supabase is None
    assert cfg.sync.refresh_interval == 15.0
    assert cfg.sync.confirm_timeout == 10.0
    assert cfg.sync.stuck_refresh_limit == 2
    assert cfg.server.port == 8000
    assert cfg.server.cors_origins == ["*"]


def test_supabase_backend_requires_credentials(env):
    env.setenv("ORDER_STORE_BACKEND", "supabase")

    with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
        Config()


def test_supabase_url_must_be_https(env):
    env.setenv("ORDER_STORE_BACKEND", "supabase")
    env.setenv("SUPABASE_URL", "http://example.supabase.co")
    env.setenv("SUPABASE_KEY", "secret")

    with pytest.raises(ConfigurationError, match="https"):
        Config()


def test_safe_summary_hides_key(env):
    env.setenv("ORDER_STORE_BACKEND", "supabase")
    env.setenv("SUPABASE_URL", "https://example.supabase.co")
    env.setenv("SUPABASE_KEY", "secret")

    summary = Config().get_safe_summary()

    assert summary["supabase_url"] == "https://example.supabase.co"
    assert "secret" not in str(summary)


@pytest.mark.parametrize(
    "key,value",
    [
        ("ORDER_STORE_BACKEND", "sqlite"),
        ("REFRESH_INTERVAL_SECONDS", "fast"),
        ("CONFIRM_TIMEOUT_SECONDS", "0"),
        ("MAX_REFRESH_BACKOFF_SECONDS", "5"),
        ("STUCK_REFRESH_LIMIT", "0"),
        ("PORT", "eighty"),
        ("LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_values_fail_fast(env, key, value):
    env.setenv(key, value)

    with pytest.raises(ConfigurationError):
        Config()


def test_runtime_warnings(env):
    env.setenv("REFRESH_INTERVAL_SECONDS", "5")
    env.setenv("CONFIRM_TIMEOUT_SECONDS", "8")

    warnings = Config().validate_runtime_dependencies()

    assert any("In-memory" in w for w in warnings)
    assert any("CONFIRM_TIMEOUT_SECONDS" in w for w in warnings)


def test_reload_config_replaces_singleton(env):
    env.setenv("STUCK_REFRESH_LIMIT", "3")

    cfg = config.reload_config()

    assert config.get_config() is cfg
    assert cfg.sync.stuck_refresh_limit == 3


def test_board_from_memory_config(env):
    env.setenv("REFRESH_INTERVAL_SECONDS", "30")
    env.setenv("MAX_REFRESH_BACKOFF_SECONDS", "300")

    board = OrderBoard.from_config(Config())

    assert isinstance(board.store, InMemoryOrderStore)
    assert board.refresh_interval == 30.0
    assert board.max_refresh_backoff == 300.0


def test_debug_mode_forces_debug_logging(env):
    env.setenv("LOG_LEVEL", "WARNING")
    assert Config().server.effective_log_level == "WARNING"

    env.setenv("DEBUG_MODE", "true")
    cfg = Config()

    assert cfg.server.effective_log_level == "DEBUG"
    assert cfg.get_safe_summary()["server"]["debug_mode"] is True


def test_server_entry_point_honours_debug_mode(env):
    env.setenv("DEBUG_MODE", "yes")
    env.setattr(config, "_config", None)
    levels = []
    runs = []
    env.setattr(board_server, "configure_logging", levels.append)
    env.setattr(board_server.uvicorn, "run", lambda app, **kwargs: runs.append(kwargs))

    board_server.main()

    assert levels == ["DEBUG"]
    assert runs[0]["log_level"] == "debug"
    assert runs[0]["port"] == 8000
