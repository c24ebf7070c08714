"""
HR Loan Ledger - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from hrloans.models.base import TimestampMixin
from hrloans.models.document import LedgerDocument

__all__ = [
    "TimestampMixin",
    "LedgerDocument",
]
