"""
Issue Sync - issue tracker integrations and background synchronization.
"""

__version__ = "1.0.0"
