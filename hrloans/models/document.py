"""
HR Loan Ledger - Ledger Document Model

Path-addressed JSON documents backing the document store. Loans live at
``hr/loans/{id}`` with their skip requests, override and EMI payments nested
inside the same document; employees live at ``hr/employees/{id}``.

Every write bumps ``version``; transactional writes are conditional on the
version that was read (optimistic compare-and-swap).
"""

from typing import Any, Dict

from sqlalchemy import Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from hrloans.database import Base
from hrloans.models.base import TimestampMixin


class LedgerDocument(Base, TimestampMixin):
    """A single JSON document stored under a slash-separated path."""

    __tablename__ = "ledger_documents"

    path: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
        comment="Slash-separated document path e.g. hr/loans/<id>",
    )
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Incremented on every write; used for compare-and-swap",
    )

    def __repr__(self) -> str:
        return f"<LedgerDocument(path={self.path}, version={self.version})>"
