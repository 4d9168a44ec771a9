"""
Storage layer for the crawler: identifier store and fetched pages.
"""

from .identifier_store import (
    IdentifierStore, RedisIdentifierStore, MemoryIdentifierStore, SEQUENCE_KEY
)
from .page_store import PageStore

__all__ = [
    'IdentifierStore', 'RedisIdentifierStore', 'MemoryIdentifierStore', 'SEQUENCE_KEY',
    'PageStore'
]
