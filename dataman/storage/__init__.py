"""
Storage module for dataman - embedded transactional key-value store.

This module provides the only storage primitive the identity layer uses:
- Environment: one SQLite file with named, ordered byte-key tables
- Transaction: all-or-nothing unit of work on one environment
- Table / Cursor: keyed access, no-overwrite writes, ordered iteration

Invariants:
    - Transactions never span environments
    - Commit is durable (synchronous = FULL)
"""

from .environment import Cursor, Environment, Table, Transaction

__all__ = [
    "Environment",
    "Transaction",
    "Table",
    "Cursor",
]
