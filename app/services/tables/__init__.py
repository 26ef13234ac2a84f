"""
Table Services

The block registry is process-wide state owned by the coordinating
process; table administration is per-request.

Usage:
    from app.services.tables import get_table_blocks, TableService

    blocks = get_table_blocks()
    await blocks.block(3, "A3")
"""

from functools import lru_cache

from app.services.events import get_event_bus
from app.services.tables.blocks import TableBlock, TableBlockRegistry
from app.services.tables.service import TableService


@lru_cache()
def get_table_blocks() -> TableBlockRegistry:
    """Get the block registry bound to the application's event bus."""
    return TableBlockRegistry(get_event_bus())


def reset_table_blocks() -> None:
    get_table_blocks.cache_clear()


__all__ = [
    "get_table_blocks",
    "reset_table_blocks",
    "TableBlock",
    "TableBlockRegistry",
    "TableService",
]
