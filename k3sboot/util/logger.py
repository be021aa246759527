"""This module defines logging capabilities for k3sboot.

Everything is written to STDOUT, which systemd and cloud-init forward to the
journal and the console. During a boot the supervisor additionally mirrors
all messages into a persistent log file with :func:`add_file_handler`.
"""

import logging
import re
import sys
import time

# pylint: disable=no-name-in-module
from huepy import (bad, red, info as infomsg, yellow, run, grey, good,
                   green, bold)

LOG_LEVELS = list(range(5))
DEFAULT_LOG_LEVEL = 3
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
BANNER_WIDTH = 72
ANSI_ESCAPE = re.compile(r"\033\[[0-9;]*m")

# All named loggers are children of this one, so a single file handler
# attached here receives every message of the application.
ROOT_NAME = "k3sboot"


def get_logger(name):
    """Returns a Python logger.

    Right now, only a single handler which logs to STDOUT can be added to a
    logger. This is because if multiple calls with the same name would add
    duplicate handlers to a logger, which lead to extra prints.

    Args:
        name (str): The name of the Logger.

    Returns:
        A Python Logger.
    """

    log = logging.getLogger(name)
    set_level(log, Logger.LOG_LEVEL)

    # If we instantiate multiple loggers with the same name,
    # we would add duplicate handlers.
    if not log.handlers:
        sh = logging.StreamHandler(sys.stdout)
        fmt = logging.Formatter("%(message)s")
        sh.setFormatter(fmt)
        log.addHandler(sh)

    return log


def set_level(logger, level):
    """Sets the logging level.

    See `Python Logging Levels
    <https://docs.python.org/3/library/logging.html#levels>`_ for
    more information on how the k3sboot levels relate to the original
    Python levels.

    Args:
        logger: A Python logger object.
        level (int): The logging level.

    Raises:
        ValueError if log level is unsupported.
    """

    if level not in LOG_LEVELS:
        raise ValueError(f"log level {level} is not supported")

    logger.disabled = False
    if level == 1:
        logger.setLevel(40)
    elif level == 2:
        logger.setLevel(30)
    elif level == 3:
        logger.setLevel(20)
    elif level == 4:
        logger.setLevel(10)
    else:
        logger.disabled = True


class PlainFormatter(logging.Formatter):
    """Strips the ANSI colour codes added by huepy before formatting."""

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        record.msg = strip_colors(str(record.msg))
        return super().format(record)


def strip_colors(msg):
    """Remove ANSI escape sequences from ``msg``."""
    return ANSI_ESCAPE.sub("", msg)


def add_file_handler(path, name=ROOT_NAME):
    """Mirror all log messages below ``name`` into the file at ``path``.

    Calling this twice with the same path does not add a second handler.

    Args:
        path (str): The log file, opened in append mode.
        name (str): The logger to attach the handler to.

    Returns:
        The ``logging.FileHandler`` in use.
    """
    log = logging.getLogger(name)
    for handler in log.handlers:
        if isinstance(handler, logging.FileHandler) and \
                handler.baseFilename == str(path):
            return handler

    fh = logging.FileHandler(path, mode="a")
    fh.setFormatter(PlainFormatter(FILE_FORMAT))
    log.addHandler(fh)
    return fh


class Singleton(type):
    """Metaclass to implement the Singleton pattern.

    This Metaclass implements the Singleton pattern. This should only be used
    logging purposes to avoid introducing mutable global state into the
    application.

    Everytime we instantiate :class:`k3sboot.util.logger.Logger` we check if
    we already have such an instance. If yes, that one is re-initialised and
    returned. If not, we create such an instance, add it to the
    ``_instances`` dict and then return it.

    Example:
        >>> log1 = Logger(__name__)
        >>> log2 = Logger(__name__)
        >>> id(log1) == id(log2)
        True
    """
    _instances = {}

    def __call__(cls, *args, **kwargs):
        if cls not in cls._instances:
            cls._instances[cls] = super(Singleton, cls).__call__(*args, **kwargs)
        else:
            cls._instances[cls].__init__(*args, **kwargs)

        return cls._instances[cls]


class Logger(metaclass=Singleton):
    """This class provides logging capabilities.

    This class is a singleton that returns as proxy instance of
    logging.Logger.

    Before using, make sure to set Logger.LOG_LEVEL to the desired
    level.

    The different levels are:

    .. code:: shell

        * 0 - quiet (no output)
        * 1 - error
        * 2 - warning
        * 3 - info
        * 4 - debug

    All functions support ``f``-, ``%``- and ``format``-Style formatting.

    Example:
        >>> log = Logger(__name__)
        >>> log.info("hello world")
        [~] hello world
        >>> log.info("%s %s", "hello", "world")
        [~] hello world

    Attributes:
        LOG_LEVEL (int): The log level to be used across the application.

    Args:
        name (str): The name of the logger.
    """

    LOG_LEVEL = DEFAULT_LOG_LEVEL

    def __init__(self, name):
        if not name.startswith(ROOT_NAME + "."):
            name = f"{ROOT_NAME}.{name}"
        self.logger = get_logger(name)

    @property
    def level(self):
        """Returns the Python log level equivalent.

        Returns:
            The Python loglevel equivalent or None if logger not instantiated.
        """
        if not self.logger:
            return None

        if self.logger.disabled:
            return 0

        return self.logger.level

    @level.setter
    def level(self, level):
        level_to_int = {
            'quiet': 0,
            'error': 1,
            'warning': 2,
            'info': 3,
            'debug': 4}

        try:
            level = level_to_int[level]
        except KeyError:
            level = int(level)

        Logger.LOG_LEVEL = level
        set_level(self.logger, level)

    def error(self, msg, *args, color=True, **kwargs):
        """Logs a message on error level.

        If color is True, will be logged in red with ``[-]``, else
        in plain.

        Args:
            msg (str): The message to be logged.
            color (bool): If the message should be colored.
        """

        if color:
            msg = bad(red(msg))

        self.logger.error(msg, *args, **kwargs)

    def warning(self, msg, *args, color=True, **kwargs):
        """Logs a message on warning level.

        If color is True, will be logged in yellow with ``[!]``, else
        in plain.

        Args:
            msg (str): The message to be logged.
            color (bool): If the message should be colored.
        """

        if color:
            msg = infomsg(yellow(msg))

        self.logger.warning(msg, *args, **kwargs)

    def info(self, msg, *args, color=True, **kwargs):
        """Logs a message on info level.

        If color is True, will be logged in grey with ``[~]``, else
        in plain.

        Args:
            msg (str): The message to be logged.
            color (bool): If the message should be colored.
        """

        if color:
            msg = run(grey(msg))

        self.logger.info(msg, *args, **kwargs)

    def debug(self, msg, *args, color=True, **kwargs):
        """Logs a message on debug level.

        If color is True, will be logged in grey with the current
        timestamp in brackets as prefix, else in plain.
        """

        if color:
            now = time.strftime("%Y%m%d-%H%M%S")
            msg = grey(f"[{now}] {msg}")

        self.logger.debug(msg, *args, **kwargs)

    def success(self, msg, *args, color=True, **kwargs):
        """Indicates a success.

        Messages are printend on info level.

        If color is True, will be logged in green with ``[+]``, else
        in plain.
        """

        if color:
            msg = good(green(msg))

        self.logger.info(msg, *args, **kwargs)

    def banner(self, title, color=True):
        """Logs a titled banner on info level.

        Each major boot step starts with a banner, so the failing phase
        can be found from the console output alone.

        Example:
            >>> log.banner("Installing k3s")
            ========================================================================
            == Installing k3s
            ========================================================================

        Args:
            title (str): The title of the step.
            color (bool): If the banner should be bold.
        """
        rule = "=" * BANNER_WIDTH
        text = f"== {title}"
        if color:
            text = bold(text)

        for line in (rule, text, rule):
            self.logger.info(line)
