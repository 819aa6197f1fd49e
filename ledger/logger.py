"""Logging helpers for the ledger package."""

from __future__ import annotations

import logging
from typing import Optional

from ledger.config import LOG_LEVEL

_CONFIGURED: Optional[bool] = None


def get_logger(name: str = "ledger") -> logging.Logger:
    """Return a named logger, configuring the root format on first use."""
    global _CONFIGURED
    if _CONFIGURED is None:
        logging.basicConfig(
            level=getattr(logging, LOG_LEVEL, logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        _CONFIGURED = True
    return logging.getLogger(name)
