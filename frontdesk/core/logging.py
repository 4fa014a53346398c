"""Logging configuration for the folio API.

Log level comes from the LOG_LEVEL setting (DEBUG, INFO, WARNING, ERROR).
Integrity warnings and checkout transitions are meant to be read by
operators, so the format keeps timestamps and logger names.
"""

import logging
import sys

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(level_name: str) -> int:
    return LOG_LEVEL_MAP.get(level_name.upper(), logging.INFO)


def setup_logging(level_name: str = "INFO") -> None:
    """
    Configure the root logger with a single stdout handler.

    Calling it twice replaces the handler instead of duplicating output.
    """
    formatter = logging.Formatter(
        fmt="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    log_level = get_log_level(level_name)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)
