"""
Integration layer: provider adapters, the integration manager and the issue cache.
"""

from .integration_manager import IntegrationManager
from .issue_cache import IssueCache

__all__ = [
    'IntegrationManager',
    'IssueCache'
]
