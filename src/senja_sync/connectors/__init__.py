"""Remote connectors for Senja Sync."""

from senja_sync.connectors.sheet_client import SheetClient, create_sheet_client

__all__ = ["SheetClient", "create_sheet_client"]
