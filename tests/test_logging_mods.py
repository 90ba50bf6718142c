# tests/test_logging_mods.py
import logging
import logging.handlers

from config import settings

import utils.logging as logging_utils


def test_setup_logging_adds_file_and_console_handlers(monkeypatch, tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    monkeypatch.setattr(settings, "LOG_FILE", str(log_file))
    monkeypatch.setattr(settings, "ENABLE_RICH_PROGRESS", False)
    root_logger = logging.getLogger()
    saved = list(root_logger.handlers)
    try:
        logging_utils.setup_logging("debug")
        kinds = {type(h) for h in root_logger.handlers}
        assert logging.handlers.RotatingFileHandler in kinds
        assert logging.StreamHandler in kinds
        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert log_file.parent.exists()
    finally:
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers[:] = saved
