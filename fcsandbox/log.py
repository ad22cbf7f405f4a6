#!/usr/bin/env python3

import logging

LOG_FORMAT = '%(asctime)s | %(levelname)-4s | %(name)-20s | %(message)s'


def get_logger(name, level=None):
    """Get a logger with a stream handler attached once"""
    logger = logging.getLogger(name)

    # Configure only if no handlers are already set
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
        logger.setLevel(level or logging.INFO)
    elif level is not None:
        logger.setLevel(level)

    return logger


def set_level(level):
    """Apply a level (name or number) to every fcsandbox logger"""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    for name in list(logging.root.manager.loggerDict):
        if name == "fcsandbox" or name.startswith("fcsandbox."):
            logging.getLogger(name).setLevel(level)
    return level
