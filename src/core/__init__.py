"""
Lab Results Gateway Core Package

Reliable delivery of encoded lab results: idempotent ingestion, the
transactional outbox, leased message channels, poison-channel retries and
dead-lettering.
"""

from . import database

__all__ = ["database"]
