"""
CLI runner module.

Provides commands:
- import: Load a ledger/document snapshot
- score: Rank documents for a transaction
- search: Queue a transaction search
- sync: Queue mailbox sync jobs for uncovered dates
- work: Process pending jobs
- connect/disconnect/reconnect: Mailbox source lifecycle
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
