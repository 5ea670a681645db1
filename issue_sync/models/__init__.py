"""
SQLAlchemy models used by the sync layer.
"""
