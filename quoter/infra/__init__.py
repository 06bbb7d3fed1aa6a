"""
Infrastructure: logging, indexer HTTP client, exchange interfaces.
"""
