"""Tests for logging configuration."""

import logging

import pytest

from pgtop import logging_setup


@pytest.fixture(autouse=True)
def fresh_logging():
    logging_setup.reset()
    yield
    logging_setup.reset()


class TestParseLevel:
    """Tests for parse_level."""

    def test_known_levels(self):
        """Test level names are case-insensitive."""
        assert logging_setup.parse_level("debug") == ("DEBUG", logging.DEBUG)
        assert logging_setup.parse_level(" Warning ") == ("WARNING", logging.WARNING)

    def test_unknown_defaults_to_info(self):
        """Test unknown or missing names fall back to INFO."""
        assert logging_setup.parse_level("chatty") == ("INFO", logging.INFO)
        assert logging_setup.parse_level(None) == ("INFO", logging.INFO)


class TestConfigure:
    """Tests for configure."""

    def test_writes_to_file(self, tmp_path):
        """Test pgtop loggers write to the rotating file."""
        runtime = logging_setup.configure("DEBUG", log_dir=tmp_path / "logs")
        logging.getLogger("pgtop.worker").debug("hello from the worker")
        for handler in logging.getLogger("pgtop").handlers:
            handler.flush()
        assert runtime.file_path == tmp_path / "logs" / "pgtop.log"
        assert "hello from the worker" in runtime.file_path.read_text(encoding="utf-8")

    def test_env_level(self, tmp_path, monkeypatch):
        """Test PGTOP_LOG_LEVEL is used when no level is given."""
        monkeypatch.setenv(logging_setup.LOG_LEVEL_ENV, "error")
        runtime = logging_setup.configure(log_dir=tmp_path)
        assert runtime.level == logging.ERROR

    def test_idempotent(self, tmp_path):
        """Test a second configure keeps the first runtime and handler."""
        first = logging_setup.configure("INFO", log_dir=tmp_path / "a")
        second = logging_setup.configure("DEBUG", log_dir=tmp_path / "b")
        assert second is first
        assert logging_setup.get_runtime() is first
        assert len(logging.getLogger("pgtop").handlers) == 1

    def test_default_dir_under_state_home(self):
        """Test the default log directory follows XDG_STATE_HOME."""
        runtime = logging_setup.configure()
        assert runtime.file_path.parent == logging_setup.default_log_dir()
        assert "state" in runtime.file_path.parts

    def test_reset(self, tmp_path):
        """Test reset removes the handler."""
        logging_setup.configure(log_dir=tmp_path)
        logging_setup.reset()
        assert logging_setup.get_runtime() is None
        assert logging.getLogger("pgtop").handlers == []
