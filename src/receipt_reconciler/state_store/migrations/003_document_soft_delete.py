"""
Migration 003: Add soft delete support to documents table.

Adds deleted_at so documents of a disconnected source can be hidden and
restored on reconnect instead of being erased.
"""

import sqlite3

VERSION = 3
NAME = "document_soft_delete"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add soft delete column to documents."""
    conn.execute(
        """
        ALTER TABLE documents ADD COLUMN deleted_at TEXT DEFAULT NULL
    """
    )
    # Index for efficient filtering of active (non-deleted) records
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_deleted ON documents(deleted_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove soft delete column (SQLite doesn't support DROP COLUMN easily)."""
    raise NotImplementedError("Downgrade not supported for this migration")
