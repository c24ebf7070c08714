"""
Approval Workflow Service
Single-approver workflow shared by loans, skip-EMI requests and max-loan overrides

Each request kind plugs in an ApprovalHandler that knows where its record
lives inside the loan document, how a new request is attached, and which side
effects a decision has. The workflow itself owns the common state machine:

    Pending --approve--> Approved
    Pending --reject---> Rejected

A decision is a single store transaction on the loan document: the Pending
check, the kind-specific side effects and the status write either all land or
none do. Two approvers racing on the same request therefore produce exactly one
decision; the loser sees RequestAlreadyResolvedException.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
import logging

from hrloans.config import settings
from hrloans.schemas.approval import (
    ApprovalRequestId,
    PendingRequest,
    RequestKind,
    ResolvedRequest,
)
from hrloans.schemas.loan import Actor, ApprovableRecord, Decision, Loan
from hrloans.services.document_store import DocumentStore, join_path
from hrloans.utils.error_handling import (
    ApprovalRequestNotFoundException,
    InsufficientPermissionsException,
    LoanNotFoundException,
    RequestAlreadyResolvedException,
    ValidationException,
)
from hrloans.utils.permissions import LoanPermission, has_permission

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_permission(actor: Actor, permission: LoanPermission) -> None:
    if not has_permission(actor.role, permission):
        logger.warning(f"{actor.display_name} ({actor.role.value}) denied {permission.value}")
        raise InsufficientPermissionsException(permission.value, actor.role.value)


class ApprovalHandler:
    """
    Kind-specific behaviour for one RequestKind.

    Handlers run inside store transactions and must not perform I/O.
    """

    kind: RequestKind
    submit_permission: LoanPermission
    resolve_permission: LoanPermission

    def locate(self, loan: Loan, request_id: ApprovalRequestId) -> Optional[ApprovableRecord]:
        """Find the request's record inside the loan, or None."""
        raise NotImplementedError

    def iter_requests(self, loan: Loan) -> Iterator[Tuple[ApprovalRequestId, ApprovableRecord]]:
        """All requests of this kind held by the loan."""
        raise NotImplementedError

    def request_id_for(self, loan_id: str, payload: Dict[str, Any]) -> ApprovalRequestId:
        raise NotImplementedError

    def attach(
        self,
        loan: Optional[Loan],
        payload: Dict[str, Any],
        requested_by: Actor,
        now: datetime,
    ) -> Loan:
        """
        Add a new Pending request. ``loan`` is None for kinds that create the
        loan itself. Returns the loan to persist.
        """
        raise NotImplementedError

    def on_resolve(
        self,
        loan: Loan,
        record: ApprovableRecord,
        decision: Decision,
        actor: Actor,
        now: datetime,
        context: Dict[str, Any],
    ) -> None:
        """Side effects of a decision, applied before the status is written."""

    def describe(self, loan: Loan, record: ApprovableRecord, request_id: ApprovalRequestId) -> Dict[str, Any]:
        return {
            "request_id": str(request_id),
            "kind": request_id.kind,
            "loan_id": loan.id,
            "month": request_id.month,
            "employee_id": loan.employee_id,
            "employee_name": loan.employee_name,
            "amount": getattr(record, "requested_amount", None),
            "status": record.status_value,
            "requested_by": getattr(record, "requested_by", None),
            "requested_at": getattr(record, "requested_at", None),
            "reason": getattr(record, "reason", None),
        }


class ApprovalWorkflowService:
    """
    Submit, resolve and list approvable requests.
    """

    def __init__(
        self,
        store: DocumentStore,
        loans_path: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.loans_path = loans_path or settings.loans_path
        self.clock = clock or utcnow
        self.handlers: Dict[RequestKind, ApprovalHandler] = {}

    def register(self, handler: ApprovalHandler) -> None:
        self.handlers[handler.kind] = handler

    def _get_handler(self, kind: RequestKind) -> ApprovalHandler:
        handler = self.handlers.get(RequestKind(kind))
        if handler is None:
            raise ValidationException(message=f"No approval handler registered for {kind}", field="kind")
        return handler

    def _loan_path(self, loan_id: str) -> str:
        return join_path(self.loans_path, loan_id)

    # ===========================================
    # SUBMIT
    # ===========================================

    async def submit(
        self,
        kind: RequestKind,
        payload: Dict[str, Any],
        requested_by: Actor,
        loan_id: Optional[str] = None,
    ) -> PendingRequest:
        """
        Create a new Pending request.

        Loan requests create a new loan document. Other kinds are attached to the
        existing loan ``loan_id`` in a single transaction.
        """
        handler = self._get_handler(kind)
        require_permission(requested_by, handler.submit_permission)
        now = self.clock()

        if handler.kind == RequestKind.LOAN:
            loan = handler.attach(None, payload, requested_by, now)
            loan.id = await self.store.create(self.loans_path, loan.to_document())
        else:
            if not loan_id:
                raise ValidationException(message="A loan id is required", field="loan_id")

            def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
                if current is None:
                    raise LoanNotFoundException(loan_id)
                updated = handler.attach(Loan.from_document(current), payload, requested_by, now)
                updated.updated_at = now
                return updated.to_document()

            loan = Loan.from_document(await self.store.transaction(self._loan_path(loan_id), apply))

        request_id = handler.request_id_for(loan.id, payload)
        record = handler.locate(loan, request_id)
        logger.info(f"{requested_by.display_name} submitted {request_id.kind.value} request {request_id}")
        return PendingRequest(**handler.describe(loan, record, request_id))

    # ===========================================
    # RESOLVE
    # ===========================================

    async def resolve(
        self,
        request_id: Union[ApprovalRequestId, str],
        decision: Decision,
        actor: Actor,
        comments: Optional[str] = None,
        **context: Any,
    ) -> ResolvedRequest:
        """
        Approve or reject a Pending request.

        Authorization is checked before the store is touched. ``context`` is
        passed through to the handler (e.g. ``approved_amount``).

        Raises:
            InsufficientPermissionsException: actor may not decide this kind
            RequestAlreadyResolvedException: request is no longer Pending
            ApprovalRequestNotFoundException: loan has no such request
        """
        if isinstance(request_id, str):
            request_id = ApprovalRequestId.parse(request_id)
        decision = Decision(decision)
        handler = self._get_handler(request_id.kind)
        require_permission(actor, handler.resolve_permission)
        now = self.clock()

        def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if current is None:
                raise LoanNotFoundException(request_id.loan_id)
            loan = Loan.from_document(current)
            record = handler.locate(loan, request_id)
            if record is None:
                raise ApprovalRequestNotFoundException(str(request_id))
            if not record.is_pending:
                raise RequestAlreadyResolvedException(str(request_id), record.status_value)

            handler.on_resolve(loan, record, decision, actor, now, context)
            record.mark_resolved(decision, actor, now, comments)
            loan.updated_at = now
            return loan.to_document()

        loan = Loan.from_document(
            await self.store.transaction(self._loan_path(request_id.loan_id), apply)
        )
        record = handler.locate(loan, request_id)

        logger.info(f"{actor.display_name} {decision.value}d {request_id.kind.value} request {request_id}")
        return ResolvedRequest(
            **handler.describe(loan, record, request_id),
            decision=decision,
            resolved_by=actor.id,
            resolved_at=now,
            comments=comments,
            loan=loan,
        )

    # ===========================================
    # QUEUES
    # ===========================================

    async def list_pending(self, kind: Optional[RequestKind] = None) -> List[PendingRequest]:
        """Pending requests of every (or one) kind, oldest first."""
        handlers = [self._get_handler(kind)] if kind else list(self.handlers.values())
        pending: List[PendingRequest] = []

        for document in await self.store.list(self.loans_path):
            loan = Loan.from_document(document)
            for handler in handlers:
                for request_id, record in handler.iter_requests(loan):
                    if record.is_pending:
                        pending.append(PendingRequest(**handler.describe(loan, record, request_id)))

        pending.sort(key=lambda request: (request.requested_at is None, request.requested_at))
        return pending
