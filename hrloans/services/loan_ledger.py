"""
Loan Ledger Service
Employee loan lifecycle: requests, approvals, skip-EMI requests and ceiling overrides

Loan rules:
- Only active employees can borrow
- EMI term between 1 and ``max_emi_months`` months
- Requests above the standard ceiling (default 3x gross monthly) carry a
  max-loan override that must be approved before the loan can be
- Net pay after the new EMI and this month's existing EMIs cannot go negative
- Approved, Rejected and Repaid are terminal
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging

from hrloans.config import Settings, get_settings
from hrloans.schemas.approval import ApprovalRequestId, PendingRequest, RequestKind, ResolvedRequest
from hrloans.schemas.loan import (
    Actor,
    ApprovableRecord,
    Decision,
    Employee,
    Loan,
    LoanStatus,
    LoanSummary,
    MaxLoanOverride,
    SkipEmiRequest,
)
from hrloans.services.approval_workflow import (
    ApprovalHandler,
    ApprovalWorkflowService,
    require_permission,
    utcnow,
)
from hrloans.services.balance_reconciler import remaining_balance
from hrloans.services.document_store import DocumentStore, join_path
from hrloans.services.emi_scheduler import compute_emi_amount, due_line
from hrloans.utils.error_handling import (
    AuthorizationException,
    ConflictException,
    EmployeeNotFoundException,
    ErrorCode,
    InactiveEmployeeException,
    LoanNotFoundException,
    PrecheckFailedException,
    ValidationException,
    validate_amount,
    validate_reason,
)
from hrloans.utils.months import month_key_for, normalize_month_key
from hrloans.utils.permissions import LoanPermission, has_permission, is_self_service

logger = logging.getLogger(__name__)

StandardMaxPolicy = Callable[[int], int]

OVERRIDE_REJECTED_REASON = "Max loan override rejected"


def multiple_of_gross(multiplier: int) -> StandardMaxPolicy:
    """Standard loan ceiling as a multiple of gross monthly salary."""

    def policy(gross_monthly: int) -> int:
        return gross_monthly * multiplier

    return policy


def _new_override(
    amount: int,
    employee: Employee,
    standard_max: int,
    requested_by: Actor,
    reason: str,
    now: datetime,
) -> MaxLoanOverride:
    return MaxLoanOverride(
        requested_amount=amount,
        requested_by=requested_by.id,
        requested_at=now,
        reason=reason,
        employee_gross=employee.salary.gross_monthly,
        standard_max=standard_max,
    )


def _ensure_own_employee(actor: Actor, employee_id: str, action: str) -> None:
    if is_self_service(actor.role) and actor.employee_id != employee_id:
        raise AuthorizationException(message=f"Employees may only {action} for themselves")


# ===========================================
# APPROVAL HANDLERS
# ===========================================

class LoanRequestHandler(ApprovalHandler):
    """The loan itself as an approvable request."""

    kind = RequestKind.LOAN
    submit_permission = LoanPermission.REQUEST_LOAN
    resolve_permission = LoanPermission.APPROVE_LOAN

    def locate(self, loan: Loan, request_id: ApprovalRequestId) -> Optional[ApprovableRecord]:
        return loan if loan.id == request_id.loan_id else None

    def iter_requests(self, loan: Loan) -> Iterator[Tuple[ApprovalRequestId, ApprovableRecord]]:
        yield ApprovalRequestId.for_loan(loan.id), loan

    def request_id_for(self, loan_id: str, payload: Dict[str, Any]) -> ApprovalRequestId:
        return ApprovalRequestId.for_loan(loan_id)

    def attach(self, loan: Optional[Loan], payload: Dict[str, Any], requested_by: Actor, now: datetime) -> Loan:
        employee: Employee = payload["employee"]
        amount = payload["amount"]
        standard_max = payload["standard_max"]

        loan = Loan(
            employee_id=employee.id,
            employee_name=employee.name,
            requested_amount=amount,
            reason=payload["reason"],
            request_date=now.date(),
            emi_months=payload["emi_months"],
            status=LoanStatus.PENDING,
            created_by=requested_by.id,
            created_at=now,
            updated_at=now,
        )
        if amount > standard_max:
            loan.max_loan_override = _new_override(
                amount, employee, standard_max, requested_by, payload["reason"], now
            )
        return loan

    def on_resolve(
        self,
        loan: Loan,
        record: ApprovableRecord,
        decision: Decision,
        actor: Actor,
        now: datetime,
        context: Dict[str, Any],
    ) -> None:
        override = loan.max_loan_override

        if decision == Decision.REJECT:
            loan.rejection_reason = context.get("rejection_reason")
            if override is not None and override.is_pending:
                override.mark_resolved(Decision.REJECT, actor, now, "Loan request rejected")
            return

        ceiling = loan.requested_amount
        if override is not None:
            if override.is_pending:
                raise PrecheckFailedException(
                    loan.id, str(ApprovalRequestId.for_override(loan.id)), override.status_value
                )
            if not override.is_approved:
                # Rejected override under the cap policy
                ceiling = min(ceiling, override.standard_max)

        approved_amount = context.get("approved_amount")
        if approved_amount is None:
            approved_amount = ceiling
        if approved_amount > ceiling:
            raise ValidationException(
                message=f"Approved amount {approved_amount} exceeds the allowed {ceiling}",
                field="approved_amount",
                details={"requested_amount": loan.requested_amount, "ceiling": ceiling},
            )

        loan.approved_amount = approved_amount
        loan.emi_amount = compute_emi_amount(approved_amount, loan.emi_months)
        loan.disbursed_date = now.date()
        loan.remaining_balance = approved_amount

    def describe(self, loan: Loan, record: ApprovableRecord, request_id: ApprovalRequestId) -> Dict[str, Any]:
        view = super().describe(loan, record, request_id)
        view.update(requested_by=loan.created_by, requested_at=loan.created_at)
        return view


class SkipEmiRequestHandler(ApprovalHandler):
    """Requests to suspend one month's EMI on an approved loan."""

    kind = RequestKind.SKIP_EMI
    submit_permission = LoanPermission.REQUEST_SKIP_EMI
    resolve_permission = LoanPermission.APPROVE_SKIP_EMI

    def locate(self, loan: Loan, request_id: ApprovalRequestId) -> Optional[ApprovableRecord]:
        return loan.skip_emi_requests.get(request_id.month)

    def iter_requests(self, loan: Loan) -> Iterator[Tuple[ApprovalRequestId, ApprovableRecord]]:
        for month, request in loan.skip_emi_requests.items():
            yield ApprovalRequestId.for_skip_emi(loan.id, month), request

    def request_id_for(self, loan_id: str, payload: Dict[str, Any]) -> ApprovalRequestId:
        return ApprovalRequestId.for_skip_emi(loan_id, payload["month"])

    def attach(self, loan: Optional[Loan], payload: Dict[str, Any], requested_by: Actor, now: datetime) -> Loan:
        month = payload["month"]
        _ensure_own_employee(requested_by, loan.employee_id, "request EMI skips")

        if loan.status_value != LoanStatus.APPROVED.value:
            raise ValidationException(
                message=f"EMI skips can only be requested on approved loans (loan is {loan.status_value})",
                field="loan_id",
            )
        if month < loan.disbursement_month:
            raise ValidationException(
                message=f"Month {month} is before the loan was disbursed ({loan.disbursement_month})",
                field="month",
            )
        if loan.credited_payment(month) is not None:
            raise ValidationException(
                message=f"The EMI for {month} has already been deducted by payroll",
                field="month",
            )
        if month in loan.skip_emi_requests:
            raise ValidationException(
                message=f"A skip request for {month} already exists",
                field="month",
                code=ErrorCode.DUPLICATE_SKIP_REQUEST,
            )

        requests = dict(loan.skip_emi_requests)
        requests[month] = SkipEmiRequest(
            requested_by=requested_by.id,
            requested_at=now,
            reason=payload["reason"],
        )
        loan.skip_emi_requests = dict(sorted(requests.items()))
        return loan

    def on_resolve(
        self,
        loan: Loan,
        record: ApprovableRecord,
        decision: Decision,
        actor: Actor,
        now: datetime,
        context: Dict[str, Any],
    ) -> None:
        month = next(m for m, request in loan.skip_emi_requests.items() if request is record)
        if decision == Decision.APPROVE and loan.credited_payment(month) is not None:
            raise ValidationException(
                message=f"The EMI for {month} was deducted while the skip request was pending",
                field="month",
            )

    def describe(self, loan: Loan, record: ApprovableRecord, request_id: ApprovalRequestId) -> Dict[str, Any]:
        view = super().describe(loan, record, request_id)
        view["amount"] = loan.emi_amount
        return view


class MaxLoanOverrideHandler(ApprovalHandler):
    """Approval to lend above the standard ceiling."""

    kind = RequestKind.MAX_LOAN_OVERRIDE
    submit_permission = LoanPermission.REQUEST_LOAN
    resolve_permission = LoanPermission.APPROVE_LOAN_OVERRIDE

    def __init__(self, rejection_policy: str = "reject_loan"):
        self.rejection_policy = rejection_policy

    def locate(self, loan: Loan, request_id: ApprovalRequestId) -> Optional[ApprovableRecord]:
        return loan.max_loan_override

    def iter_requests(self, loan: Loan) -> Iterator[Tuple[ApprovalRequestId, ApprovableRecord]]:
        if loan.max_loan_override is not None:
            yield ApprovalRequestId.for_override(loan.id), loan.max_loan_override

    def request_id_for(self, loan_id: str, payload: Dict[str, Any]) -> ApprovalRequestId:
        return ApprovalRequestId.for_override(loan_id)

    def attach(self, loan: Optional[Loan], payload: Dict[str, Any], requested_by: Actor, now: datetime) -> Loan:
        raise ValidationException(
            message="Max loan overrides are raised by requesting or editing a loan above the ceiling",
            field="kind",
        )

    def on_resolve(
        self,
        loan: Loan,
        record: ApprovableRecord,
        decision: Decision,
        actor: Actor,
        now: datetime,
        context: Dict[str, Any],
    ) -> None:
        if decision == Decision.REJECT and self.rejection_policy == "reject_loan" and loan.is_pending:
            loan.mark_resolved(Decision.REJECT, actor, now)
            loan.rejection_reason = OVERRIDE_REJECTED_REASON


# ===========================================
# LEDGER
# ===========================================

class LoanLedgerService:
    """
    Loan lifecycle operations. All mutations go through the approval workflow or
    a single store transaction on the loan document.
    """

    def __init__(
        self,
        store: DocumentStore,
        standard_max: Optional[StandardMaxPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or get_settings()
        self.store = store
        self.standard_max = standard_max or multiple_of_gross(self.config.loan_ceiling_multiplier)
        self.clock = clock or utcnow

        self.workflow = ApprovalWorkflowService(store, self.config.loans_path, clock=self.clock)
        self.workflow.register(LoanRequestHandler())
        self.workflow.register(SkipEmiRequestHandler())
        self.workflow.register(MaxLoanOverrideHandler(self.config.override_rejection_policy))

    def _loan_path(self, loan_id: str) -> str:
        return join_path(self.config.loans_path, loan_id)

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def _read_record(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        # Ids are single path segments; anything else would address a value nested in a document
        if not record_id or "/" in str(record_id):
            return None
        data = await self.store.read(join_path(collection, record_id))
        return data if isinstance(data, dict) else None

    async def get_employee(self, employee_id: str) -> Employee:
        data = await self._read_record(self.config.employees_path, employee_id)
        if not data:
            raise EmployeeNotFoundException(employee_id)
        return Employee.from_document({"id": employee_id, **data})

    async def _get_active_employee(self, employee_id: str) -> Employee:
        employee = await self.get_employee(employee_id)
        if not employee.is_active:
            raise InactiveEmployeeException(employee_id, employee.status)
        return employee

    async def get_loan(self, loan_id: str) -> Loan:
        data = await self._read_record(self.config.loans_path, loan_id)
        if not data:
            raise LoanNotFoundException(loan_id)
        return Loan.from_document({"id": loan_id, **data})

    async def list_loans(
        self,
        employee_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> List[Loan]:
        """Loans, optionally filtered by employee and status, oldest first."""
        loans = [Loan.from_document(doc) for doc in await self.store.list(self.config.loans_path)]
        if employee_id:
            loans = [loan for loan in loans if loan.employee_id == employee_id]
        if status:
            status_value = LoanStatus(status).value
            loans = [loan for loan in loans if loan.status_value == status_value]
        return loans

    async def get_loan_summary(self, employee_id: Optional[str] = None) -> LoanSummary:
        loans = await self.list_loans(employee_id=employee_id)

        def count(status: LoanStatus) -> int:
            return sum(1 for loan in loans if loan.status_value == status.value)

        return LoanSummary(
            total_loans=len(loans),
            pending_loans=count(LoanStatus.PENDING),
            approved_loans=count(LoanStatus.APPROVED),
            rejected_loans=count(LoanStatus.REJECTED),
            repaid_loans=count(LoanStatus.REPAID),
            total_approved_amount=sum(loan.approved_amount or 0 for loan in loans),
            total_outstanding=sum(
                remaining_balance(loan)
                for loan in loans
                if loan.status_value == LoanStatus.APPROVED.value
            ),
        )

    async def list_pending_requests(self, kind: Optional[RequestKind] = None) -> List[PendingRequest]:
        return await self.workflow.list_pending(kind)

    # ===========================================
    # VALIDATION HELPERS
    # ===========================================

    def _validate_emi_months(self, emi_months: Any) -> int:
        if isinstance(emi_months, bool) or not isinstance(emi_months, int) or emi_months < 1:
            raise ValidationException(message="EMI months must be a positive integer", field="emi_months")
        if emi_months > self.config.max_emi_months:
            raise ValidationException(
                message=f"EMI months cannot exceed {self.config.max_emi_months}",
                field="emi_months",
            )
        return emi_months

    async def _check_affordability(self, employee: Employee, amount: int, emi_months: int) -> None:
        """Net pay after this month's EMIs plus the new one must not go negative."""
        month = month_key_for(self.clock().date())
        current_emis = 0
        for loan in await self.list_loans(employee_id=employee.id, status=LoanStatus.APPROVED):
            if loan.disbursement_month and loan.disbursement_month <= month:
                current_emis += due_line(loan, month).amount

        new_emi = compute_emi_amount(amount, emi_months)
        gross = employee.salary.gross_monthly
        if gross - current_emis - new_emi < 0:
            raise ValidationException(
                message="Net salary after the new EMI would be negative",
                field="amount",
                details={"gross_monthly": gross, "current_emis": current_emis, "new_emi": new_emi},
            )

    # ===========================================
    # LOAN REQUESTS
    # ===========================================

    async def request_loan(
        self,
        employee_id: str,
        amount: int,
        reason: str,
        emi_months: int,
        requested_by: Actor,
    ) -> Loan:
        """Create a Pending loan, with a Pending override if above the ceiling."""
        amount = validate_amount(amount)
        reason = validate_reason(reason)
        emi_months = self._validate_emi_months(emi_months)
        require_permission(requested_by, LoanPermission.REQUEST_LOAN)
        _ensure_own_employee(requested_by, employee_id, "request loans")

        employee = await self._get_active_employee(employee_id)
        await self._check_affordability(employee, amount, emi_months)
        standard_max = self.standard_max(employee.salary.gross_monthly)

        pending = await self.workflow.submit(
            RequestKind.LOAN,
            {
                "employee": employee,
                "amount": amount,
                "reason": reason,
                "emi_months": emi_months,
                "standard_max": standard_max,
            },
            requested_by,
        )
        if amount > standard_max:
            logger.info(
                f"Loan {pending.loan_id} for {amount} exceeds standard max {standard_max}; override requested"
            )
        return await self.get_loan(pending.loan_id)

    async def update_loan(
        self,
        loan_id: str,
        actor: Actor,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        emi_months: Optional[int] = None,
    ) -> Loan:
        """
        Edit a Pending loan. Allowed for the loan's creator, the borrowing
        employee, and anyone who may approve loans.
        """
        if amount is None and reason is None and emi_months is None:
            raise ValidationException(message="Nothing to update")
        if amount is not None:
            amount = validate_amount(amount)
        if reason is not None:
            reason = validate_reason(reason)
        if emi_months is not None:
            emi_months = self._validate_emi_months(emi_months)
        require_permission(actor, LoanPermission.EDIT_LOAN)

        existing = await self.get_loan(loan_id)
        if not (
            has_permission(actor.role, LoanPermission.APPROVE_LOAN)
            or existing.created_by == actor.id
            or (actor.employee_id is not None and actor.employee_id == existing.employee_id)
        ):
            raise AuthorizationException(message="Only the requester or an approver can edit this loan")

        employee = await self._get_active_employee(existing.employee_id)
        new_amount = amount if amount is not None else existing.requested_amount
        new_months = emi_months if emi_months is not None else existing.emi_months
        await self._check_affordability(employee, new_amount, new_months)
        standard_max = self.standard_max(employee.salary.gross_monthly)
        now = self.clock()

        def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if current is None:
                raise LoanNotFoundException(loan_id)
            loan = Loan.from_document(current)
            if not loan.is_pending:
                raise ConflictException(
                    message=f"Only pending loans can be edited (loan is {loan.status_value})",
                    resource_type="Loan",
                )

            loan.requested_amount = new_amount
            loan.emi_months = new_months
            if reason is not None:
                loan.reason = reason

            override = loan.max_loan_override
            if new_amount > standard_max:
                if override is None or override.is_pending:
                    loan.max_loan_override = _new_override(
                        new_amount, employee, standard_max, actor, loan.reason, now
                    )
                elif override.is_approved and new_amount > override.requested_amount:
                    raise ConflictException(
                        message="Amount exceeds the approved override; submit a new loan request",
                        resource_type="Loan",
                    )
            elif override is not None and override.is_pending:
                loan.max_loan_override = None

            loan.updated_at = now
            return loan.to_document()

        document = await self.store.transaction(self._loan_path(loan_id), apply)
        logger.info(f"{actor.display_name} edited loan {loan_id}")
        return Loan.from_document(document)

    async def approve_loan(
        self,
        loan_id: str,
        actor: Actor,
        approved_amount: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> Loan:
        """Approve and disburse a Pending loan."""
        require_permission(actor, LoanPermission.APPROVE_LOAN)
        if approved_amount is not None:
            approved_amount = validate_amount(approved_amount, "approved_amount")
        existing = await self.get_loan(loan_id)
        await self._get_active_employee(existing.employee_id)

        resolved = await self.workflow.resolve(
            ApprovalRequestId.for_loan(loan_id),
            Decision.APPROVE,
            actor,
            comments=comments,
            approved_amount=approved_amount,
        )
        logger.info(
            f"Loan {loan_id} approved for {resolved.loan.approved_amount} "
            f"at EMI {resolved.loan.emi_amount} x {resolved.loan.emi_months}"
        )
        return resolved.loan

    async def reject_loan(self, loan_id: str, actor: Actor, reason: str) -> Loan:
        reason = validate_reason(reason)
        resolved = await self.workflow.resolve(
            ApprovalRequestId.for_loan(loan_id),
            Decision.REJECT,
            actor,
            comments=reason,
            rejection_reason=reason,
        )
        return resolved.loan

    async def resolve_max_loan_override(
        self,
        loan_id: str,
        decision: Decision,
        actor: Actor,
        comments: Optional[str] = None,
    ) -> ResolvedRequest:
        return await self.workflow.resolve(
            ApprovalRequestId.for_override(loan_id), decision, actor, comments=comments
        )

    # ===========================================
    # SKIP EMI
    # ===========================================

    async def request_skip_emi(
        self,
        loan_id: str,
        month: Any,
        requested_by: Actor,
        reason: str,
    ) -> PendingRequest:
        month = normalize_month_key(month)
        reason = validate_reason(reason)
        require_permission(requested_by, LoanPermission.REQUEST_SKIP_EMI)
        loan = await self.get_loan(loan_id)
        await self._get_active_employee(loan.employee_id)

        return await self.workflow.submit(
            RequestKind.SKIP_EMI,
            {"month": month, "reason": reason},
            requested_by,
            loan_id=loan_id,
        )

    async def resolve_skip_emi(
        self,
        loan_id: str,
        month: Any,
        decision: Decision,
        actor: Actor,
        comments: Optional[str] = None,
    ) -> ResolvedRequest:
        return await self.workflow.resolve(
            ApprovalRequestId.for_skip_emi(loan_id, month), decision, actor, comments=comments
        )
