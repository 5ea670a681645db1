"""
Core infrastructure: configuration, logging, errors, encryption, storage clients.
"""
