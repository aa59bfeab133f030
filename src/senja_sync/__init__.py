"""Senja Sync - offline-first cache and sync core for a spreadsheet backend."""

__version__ = "1.0.0"

from senja_sync.config import Limits, Settings
from senja_sync.core.schema import Collection

__all__ = ["Collection", "Limits", "Settings", "__version__"]
