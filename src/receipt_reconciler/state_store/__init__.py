"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Ledger transactions and partners
- Documents and their transaction connections (soft delete aware)
- Search/sync job queue
- Mailbox sources and credentials
"""

from .sqlite_store import StateStore

__all__ = [
    "StateStore",
]
