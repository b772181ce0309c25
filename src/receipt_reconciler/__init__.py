"""
Receipt Reconciler.

Matches bank transactions against candidate documents (local files and
mailbox attachments), schedules mailbox syncs and manages connected sources.
"""

__version__ = "0.1.0"
