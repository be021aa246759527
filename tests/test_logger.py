import logging

import pytest

from k3sboot.util.logger import (Logger, LOG_LEVELS, DEFAULT_LOG_LEVEL,
                                 add_file_handler, strip_colors)


@pytest.fixture(autouse=True)
def reset_level():
    yield
    Logger.LOG_LEVEL = DEFAULT_LOG_LEVEL
    Logger("test")


def test_logger_default_state():
    assert Logger.LOG_LEVEL == DEFAULT_LOG_LEVEL


def test_logger_creation():
    for i in LOG_LEVELS:
        Logger.LOG_LEVEL = i
        log = Logger("test")
        assert log is not None
        assert log.LOG_LEVEL == i


def test_logger_fail():
    for i in [-1, 100, 23, 42]:
        Logger.LOG_LEVEL = i
        assert Logger.LOG_LEVEL == i

        with pytest.raises(ValueError):
            Logger("test")


def test_level_setter():
    log = Logger("test")
    log.level = "debug"
    assert log.level == logging.DEBUG
    log.level = "quiet"
    assert log.level == 0
    log.level = "3"
    assert log.level == logging.INFO


def test_strip_colors():
    assert strip_colors("\033[97m[~] \033[0m\033[37mhello\033[0m") == \
        "[~] hello"


def test_file_handler(tmp_path):
    path = tmp_path / "boot.log"
    handler = add_file_handler(str(path))
    try:
        assert add_file_handler(str(path)) is handler

        log = Logger("test")
        log.banner("Installing k3s")
        log.info("hello %s", "world")
        log.error("broken")
    finally:
        logging.getLogger("k3sboot").removeHandler(handler)
        handler.close()

    text = path.read_text()
    assert "== Installing k3s" in text
    assert "[~] hello world" in text
    assert "[-] broken" in text
    assert "\033" not in text


def test_no_warn_or_question_aliases():
    log = Logger("test")
    assert not hasattr(log, "warn")
    assert not hasattr(Logger, "question")
