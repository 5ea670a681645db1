"""
Sync services package
Contains the sync orchestration and search indexing services
"""

from .issue_search import SearchIndexer
from .sync_service import SyncService

__all__ = [
    'SearchIndexer',
    'SyncService'
]
