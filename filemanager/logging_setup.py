"""Logging configuration for the file manager.

Modules log through ``logging.getLogger(__name__)``; this module only attaches
one stderr handler to the ``filemanager`` logger. Setup is idempotent so that
reloads and repeated app startups do not duplicate handlers.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

_LEVELS = {
    'critical': logging.CRITICAL,
    'fatal': logging.CRITICAL,
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
}


def parse_level(name: str) -> int:
    return _LEVELS.get((name or '').strip().lower(), logging.INFO)


def configure_logging(level: str = 'info') -> logging.Logger:
    logger = logging.getLogger('filemanager')
    if not any(getattr(h, '_filemanager_handler', False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._filemanager_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(parse_level(level))
    return logger
