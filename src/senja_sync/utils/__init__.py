"""Utility modules for Senja Sync."""

from senja_sync.utils.logger import setup_logging, get_logger

__all__ = ["setup_logging", "get_logger"]
