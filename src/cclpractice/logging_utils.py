"""Logging helpers."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler


def setup_logging(
    log_dir: str = "logs",
    level: int = logging.INFO,
    console: bool = False,
) -> tuple[logging.Logger, str]:
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "cclpractice.log")

    logger = logging.getLogger("cclpractice")
    logger.setLevel(level)

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handlers: list[logging.Handler] = [
            RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
        ]
        if console:
            handlers.append(logging.StreamHandler())
        for handler in handlers:
            handler.setFormatter(fmt)
            logger.addHandler(handler)

    return logger, log_path
