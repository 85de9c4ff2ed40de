# tests/test_logging_utils.py

import logging
import warnings

import pytest

from scwtko.logging_utils import init_logging, silence_library_warnings


def _get_handler_types():
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)


def test_init_logging_stream_only(reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "run.log"
    init_logging(logfile=log_path, level=logging.INFO)

    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("scwtko.test").info("Stage '01_qc_filtered' started")
    txt = log_path.read_text()
    assert "[INFO] Stage '01_qc_filtered' started" in txt


def test_init_logging_overwrites_previous_handlers(reset_logging):
    logging.root.addHandler(logging.StreamHandler())
    logging.root.addHandler(logging.StreamHandler())

    init_logging(None)

    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_respects_level(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=log_path, level=logging.WARNING)

    logger = logging.getLogger("x")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_init_logging_truncates_previous_log(tmp_path, reset_logging):
    log_path = tmp_path / "run.log"
    log_path.write_text("old run\n")

    init_logging(logfile=log_path)
    logging.getLogger("x").info("new run")

    txt = log_path.read_text()
    assert "old run" not in txt
    assert "new run" in txt


def test_silence_library_warnings_filters_known_messages():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        silence_library_warnings()
        warnings.warn("data already log-transformed", UserWarning)
        warnings.warn("something else", UserWarning)

    messages = [str(w.message) for w in caught]
    assert messages == ["something else"]
