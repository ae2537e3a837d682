import logging
import logging.handlers

import pytest

from culler.api.utils.logging_config import setup_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLoggingConfig:

    @pytest.mark.unit
    def test_console_only_without_log_dir(self, restore_root_logging, monkeypatch):
        monkeypatch.delenv("LOG_DIR", raising=False)
        setup_logging("culler", log_level="warning")

        [handler] = restore_root_logging.handlers
        assert isinstance(handler, logging.StreamHandler)
        assert handler.level == logging.WARNING
        assert logging.getLogger("aiosqlite").level == logging.WARNING

    @pytest.mark.unit
    def test_rotating_files_with_log_dir(self, restore_root_logging, tmp_path):
        setup_logging("culler", log_level="INFO", log_dir=str(tmp_path / "logs"))

        files = [h for h in restore_root_logging.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert sorted(h.level for h in files) == [logging.DEBUG, logging.ERROR]
        assert (tmp_path / "logs" / "culler.log").exists()
        assert (tmp_path / "logs" / "culler_errors.log").exists()
