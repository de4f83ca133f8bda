from __future__ import annotations

import logging
from pathlib import Path

from eye3d.logging_utils import default_logger, get_logger


def test_get_logger_is_idempotent() -> None:
    logger = get_logger("eye3d.test.idempotent", console_level="ERROR")
    n_handlers = len(logger.handlers)
    again = get_logger("eye3d.test.idempotent", console_level="DEBUG")

    assert again is logger
    assert len(again.handlers) == n_handlers == 1
    assert logger.handlers[0].level == logging.ERROR


def test_file_output(tmp_path: Path) -> None:
    log_file = tmp_path / "eye3d.log"
    logger = get_logger("eye3d.test.file", console_output=False, file_output=True, log_file=str(log_file))
    logger.debug("hello %s", "file")
    for h in logger.handlers:
        h.flush()
        h.close()

    assert "hello file" in log_file.read_text(encoding="utf-8")


def test_default_logger_name() -> None:
    assert default_logger().name == "eye3d"
