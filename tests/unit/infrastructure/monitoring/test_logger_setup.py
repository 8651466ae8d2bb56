import logging
import logging.handlers

import pytest

from steadyfetch.infrastructure.monitoring.logger_setup import resolve_level, setup_logging


@pytest.fixture
def restore_root_logger():
    """Puts back the root handlers pytest relies on."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.mark.parametrize(
    "value, expected",
    [("debug", logging.DEBUG), ("WARNING", logging.WARNING), (logging.ERROR, logging.ERROR), ("bogus", logging.INFO)],
)
def test_resolve_level(value, expected):
    assert resolve_level(value) == expected


def test_setup_logging_with_rotating_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "steadyfetch.log"

    setup_logging(log_level="debug", log_file=str(log_file))
    logging.getLogger("steadyfetch.test").warning("written to file")

    root = restore_root_logger
    assert root.level == logging.DEBUG
    file_handlers = [h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert len(file_handlers) == 1
    file_handlers[0].flush()
    assert "written to file" in log_file.read_text(encoding="utf-8")
