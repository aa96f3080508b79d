"""
Brokerage CSV → Canonical Transactions → Durable Queue → Tax Form Submission

Imports 1099-B style CSV exports, normalizes them into canonical transaction
records, and drives them one at a time into a third-party web form through a
crash-recoverable, deduplicated work queue.
"""

__version__ = "0.1.0"
