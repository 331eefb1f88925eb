"""Tests for configuration loading."""

from pathlib import Path

import pytest

from bookshare.exchange.config import Config, get_config, reset_config
from bookshare.exchange.coordinator import Coordinator
from bookshare.exchange.notify import DebouncingNotifier


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test from an empty BOOKSHARE_* environment."""
    for name in (
        "BOOKSHARE_DB_PATH",
        "BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS",
        "BOOKSHARE_LOG_LEVEL",
        "BOOKSHARE_LOG_JSON",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


class TestConfig:
    """Tests for Config.from_env."""

    def test_defaults(self):
        """Defaults apply when nothing is set."""
        config = Config.from_env()
        assert config.db_path == Path.home() / ".bookshare" / "exchange.db"
        assert config.notify_debounce_seconds == 300.0
        assert config.log_level == "INFO"
        assert config.log_json is False

    def test_overrides(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        monkeypatch.setenv("BOOKSHARE_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS", "60")
        monkeypatch.setenv("BOOKSHARE_LOG_LEVEL", "debug")
        monkeypatch.setenv("BOOKSHARE_LOG_JSON", "true")

        config = Config.from_env()
        assert config.db_path == tmp_path / "x.db"
        assert config.notify_debounce_seconds == 60.0
        assert config.log_level == "DEBUG"
        assert config.log_json is True
        assert config.validate() == []

    def test_validate_reports_problems(self, monkeypatch, tmp_path):
        """Bad values are reported, not raised."""
        monkeypatch.setenv("BOOKSHARE_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS", "-1")
        monkeypatch.setenv("BOOKSHARE_LOG_LEVEL", "LOUD")
        errors = Config.from_env().validate()
        assert len(errors) == 2

    def test_global_instance(self):
        """get_config caches until reset."""
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first

    def test_debounce_window_reaches_default_notifier(self, monkeypatch, db):
        """The coordinator's default notifier uses the configured window."""
        monkeypatch.setenv("BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS", "60")
        reset_config()

        coordinator = Coordinator(db)
        assert isinstance(coordinator.notifier, DebouncingNotifier)
        assert coordinator.notifier.window_seconds == 60.0
