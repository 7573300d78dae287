"""Logger factory shared by services, routes and scripts."""

from __future__ import annotations

import logging

from backend.app.core.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_configured = False


def get_logger(name: str) -> logging.Logger:
    global _configured
    if not _configured:
        logging.basicConfig(
            format=LOG_FORMAT,
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
        )
        _configured = True
    return logging.getLogger(name)
