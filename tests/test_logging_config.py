import logging
from unittest.mock import patch

import pytest
import structlog

from context_search.logging_config import _is_json_mode, configure_logging, get_logger


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_configure_sets_level_and_single_handler(restore_logging):
    configure_logging("debug")
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)


def test_json_mode_follows_tty():
    with patch("context_search.logging_config.sys.stderr") as stderr:
        stderr.isatty.return_value = False
        assert _is_json_mode()
        stderr.isatty.return_value = True
        assert not _is_json_mode()


def test_stdlib_records_are_rendered(restore_logging, capsys):
    with patch("context_search.logging_config._is_json_mode", return_value=True):
        configure_logging("info")
    logging.getLogger("context_search.test").warning("remote cache down")
    get_logger("context_search.test").info("stage_done", kept=3)

    err = capsys.readouterr().err
    assert '"event": "remote cache down"' in err
    assert '"kept": 3' in err
