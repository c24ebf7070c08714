"""
HR Loan Ledger - Document Store

Path-addressed JSON document store on top of SQLAlchemy async.

Operations:
- create(path, data) -> id      new child document under a collection path
- read(path) -> value | None    exact document, or a value nested inside one
- list(path) -> [documents]     direct child documents of a collection path
- update(path, patch)           shallow merge into an existing document
- transaction(path, fn)         atomic read-modify-write

``transaction`` is an optimistic compare-and-swap: the document is read with its
version, ``fn`` computes the new value, and the write only lands if the stored
version is still the one that was read (``UPDATE ... WHERE version = :read``).
On a lost race the whole read-modify-write is retried, so ``fn`` re-evaluates
its preconditions against the winner's state. ``fn`` must be free of I/O and
side effects; returning ``None`` aborts without writing.
"""

import asyncio
import copy
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrloans.config import settings
from hrloans.models.document import LedgerDocument
from hrloans.utils.error_handling import (
    NotFoundException,
    TransactionContentionException,
    ValidationException,
)

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 0.01

UpdateFn = Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]


def normalize_path(path: str) -> str:
    """Collapse a path to ``a/b/c`` form (no leading, trailing or doubled slashes)."""
    segments = [segment for segment in str(path).split("/") if segment]
    if not segments or any(segment in (".", "..") for segment in segments):
        raise ValidationException(message=f"Invalid document path: {path!r}", field="path")
    return "/".join(segments)


def join_path(*parts: str) -> str:
    return normalize_path("/".join(parts))


_last_id_ns = 0


def new_document_id() -> str:
    """
    Generate a document id that sorts after every id issued before it.

    A strictly increasing nanosecond timestamp in fixed-width hex, followed by
    random bits so ids from separate processes do not collide.
    """
    global _last_id_ns
    stamp = max(time.time_ns(), _last_id_ns + 1)
    _last_id_ns = stamp
    return f"{stamp:016x}{uuid.uuid4().hex[:12]}"


class DocumentStore:
    """
    Document store backed by the ``ledger_documents`` table.

    Every operation runs in its own session from ``session_factory`` so that
    concurrent callers never share a unit of work.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries or settings.store_max_retries

    async def create(self, path: str, data: Dict[str, Any]) -> str:
        """Create a new document under ``path`` and return its generated id."""
        doc_id = new_document_id()
        doc_path = join_path(path, doc_id)
        payload = {**copy.deepcopy(data), "id": doc_id}

        async with self.session_factory() as session:
            session.add(LedgerDocument(path=doc_path, data=payload, version=1))
            await session.commit()

        logger.debug(f"Created document {doc_path}")
        return doc_id

    async def read(self, path: str) -> Optional[Any]:
        """
        Read the value at ``path``.

        When no document is stored at exactly ``path``, the nearest stored
        ancestor is looked up and the remaining segments are resolved inside
        its JSON (e.g. ``hr/loans/<id>/emiPayments/2025-03``).
        """
        path = normalize_path(path)
        async with self.session_factory() as session:
            document = await session.get(LedgerDocument, path)
            if document is not None:
                return copy.deepcopy(document.data)

            segments = path.split("/")
            ancestors = ["/".join(segments[:i]) for i in range(len(segments) - 1, 0, -1)]
            if not ancestors:
                return None
            result = await session.execute(
                select(LedgerDocument).where(LedgerDocument.path.in_(ancestors))
            )
            found = {doc.path: doc for doc in result.scalars().all()}

        for ancestor in ancestors:
            if ancestor not in found:
                continue
            value: Any = found[ancestor].data
            for segment in segments[len(ancestor.split("/")):]:
                if not isinstance(value, dict) or segment not in value:
                    return None
                value = value[segment]
            return copy.deepcopy(value)
        return None

    async def list(self, path: str) -> List[Dict[str, Any]]:
        """Direct child documents of ``path`` in creation order (ids are time-ordered)."""
        prefix = normalize_path(path) + "/"
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerDocument)
                .where(LedgerDocument.path.startswith(prefix, autoescape=True))
                .order_by(LedgerDocument.path)
            )
            documents = result.scalars().all()

        return [
            copy.deepcopy(doc.data)
            for doc in documents
            if "/" not in doc.path[len(prefix):]
        ]

    async def update(self, path: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``patch`` into the document at ``path``."""

        def merge(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if current is None:
                raise NotFoundException(resource_type="Document", resource_id=path)
            return {**current, **copy.deepcopy(patch)}

        return await self.transaction(path, merge)

    async def transaction(self, path: str, update_fn: UpdateFn) -> Optional[Dict[str, Any]]:
        """
        Atomically apply ``update_fn`` to the document at ``path``.

        Returns the written value, or the unchanged current value when
        ``update_fn`` returns ``None``. Exceptions raised by ``update_fn``
        propagate with nothing written.

        Raises:
            TransactionContentionException: the version check failed on every attempt
        """
        path = normalize_path(path)

        for attempt in range(1, self.max_retries + 1):
            async with self.session_factory() as session:
                document = await session.get(LedgerDocument, path)
                current = copy.deepcopy(document.data) if document is not None else None
                read_version = document.version if document is not None else None

                new_value = update_fn(current)
                if new_value is None:
                    await session.rollback()
                    return current

                try:
                    if read_version is None:
                        session.add(LedgerDocument(path=path, data=new_value, version=1))
                        await session.commit()
                        return new_value

                    result = await session.execute(
                        update(LedgerDocument)
                        .where(
                            LedgerDocument.path == path,
                            LedgerDocument.version == read_version,
                        )
                        .values(data=new_value, version=read_version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        await session.commit()
                        return new_value
                    await session.rollback()
                except (IntegrityError, OperationalError) as exc:
                    # Concurrent insert of the same path, or the database refused the write lock
                    await session.rollback()
                    logger.debug(f"Write to {path} failed under contention: {exc.__class__.__name__}")

            logger.debug(
                f"Version conflict on {path} (attempt {attempt}/{self.max_retries}), retrying"
            )
            await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)

        logger.warning(f"Giving up on {path} after {self.max_retries} conflicting attempts")
        raise TransactionContentionException(path, self.max_retries)
