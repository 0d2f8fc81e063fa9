"""
SQLAlchemy models for the CA ledgers.
"""

from .ledger import LedgerState, LedgerEntryRecord

__all__ = ["LedgerState", "LedgerEntryRecord"]
