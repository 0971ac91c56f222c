"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.getenv("DATA_ROOT") or (APP_ROOT / "data"))

_announced = False


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it when missing."""
    global _announced

    DATA_ROOT.mkdir(parents=True, exist_ok=True)

    if not _announced:
        _announced = True
        LOGGER.info("Using data directory %s", DATA_ROOT)

    return DATA_ROOT
