"""Configuration for the cash-flow forecaster.

Paths and limits live here so the storage layer and the CLI read the same
values. Every setting can be overridden through an environment variable.
"""

from __future__ import annotations

import os
from pathlib import Path

# Storage
DATA_DIR = Path(os.getenv("CASHFLOW_DATA_DIR", "saves"))
STORE_FILE = os.getenv("CASHFLOW_STORE_FILE", "budget-store.json")

# Logical keys inside the key-value store
STORE_KEY = "budgetInfo"
LEGACY_STORE_KEY = "budget_info"

# Number of manual balance snapshots kept, most recent first
BALANCE_HISTORY_LIMIT = int(os.getenv("CASHFLOW_BALANCE_HISTORY_LIMIT", "10"))

LOG_LEVEL = os.getenv("CASHFLOW_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def get_store_path() -> Path:
    """Get the JSON store file path."""
    return (DATA_DIR / STORE_FILE).resolve()
