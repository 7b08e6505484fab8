"""
core/logging_config.py -- Process-wide logging setup.

Every module gets its logger via logging.getLogger("accountd.<area>"); this
module only configures the root handler once at process start (API lifespan
or CLI entry point). Tests never call it, so pytest's caplog sees raw records.
"""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Install the stderr handler and quieten noisy third-party loggers."""
    logging.basicConfig(level=level.upper(), format=_FORMAT, datefmt=_DATEFMT)
    # SQL echo is opt-in via sqlalchemy's own logger, never via our level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
