"""
HR Loan Ledger - Loans Router

API endpoints for employee loans, EMI skips, max-loan overrides, the approvals
queue and the payroll integration.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from hrloans.dependencies import (
    can_view_all_loans,
    get_balance_reconciler,
    get_current_actor,
    get_loan_ledger,
    get_payroll_port,
)
from hrloans.schemas.approval import PendingRequest, RequestKind, ResolvedRequest
from hrloans.schemas.loan import (
    Actor,
    DecisionRequest,
    DueAmountResponse,
    DueLine,
    Loan,
    LoanApprove,
    LoanCreate,
    LoanReject,
    LoanSchedule,
    LoanStatus,
    LoanSummary,
    LoanUpdate,
    PayrollBatchCredit,
    PayrollCreditCreate,
    PayrollCreditResult,
    SkipEmiCreate,
)
from hrloans.services.approval_workflow import require_permission
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.emi_scheduler import build_schedule, due_line
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.services.payroll_port import PayrollIntegrationPort
from hrloans.utils.error_handling import AuthorizationException, InsufficientPermissionsException
from hrloans.utils.months import normalize_month_key
from hrloans.utils.permissions import LoanPermission, has_permission


router = APIRouter()

_RESOLVE_PERMISSIONS = {
    RequestKind.LOAN: LoanPermission.APPROVE_LOAN,
    RequestKind.SKIP_EMI: LoanPermission.APPROVE_SKIP_EMI,
    RequestKind.MAX_LOAN_OVERRIDE: LoanPermission.APPROVE_LOAN_OVERRIDE,
}


def _ensure_can_view(actor: Actor, loan: Loan) -> None:
    if not can_view_all_loans(actor) and actor.employee_id != loan.employee_id:
        raise AuthorizationException(message="You can only view your own loans")


# ===========================================
# LOANS
# ===========================================

@router.get("/loans", response_model=List[Loan], tags=["Loans"])
async def list_loans(
    employee_id: Optional[str] = Query(None, description="Filter by employee"),
    status: Optional[LoanStatus] = Query(None, description="Filter by loan status"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """List loans. Employees only see their own."""
    if not can_view_all_loans(actor):
        employee_id = actor.employee_id or "-"
    return await ledger.list_loans(employee_id=employee_id, status=status)


@router.get("/loans/summary", response_model=LoanSummary, tags=["Loans"])
async def get_loan_summary(
    employee_id: Optional[str] = Query(None, description="Limit to one employee"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Loan history summary statistics."""
    if not can_view_all_loans(actor):
        employee_id = actor.employee_id or "-"
    return await ledger.get_loan_summary(employee_id=employee_id)


@router.post("/loans", response_model=Loan, status_code=status.HTTP_201_CREATED, tags=["Loans"])
async def create_loan(
    loan_data: LoanCreate,
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Request a new loan for an employee."""
    return await ledger.request_loan(
        employee_id=loan_data.employee_id,
        amount=loan_data.amount,
        reason=loan_data.reason,
        emi_months=loan_data.emi_months,
        requested_by=actor,
    )


@router.get("/loans/{loan_id}", response_model=Loan, tags=["Loans"])
async def get_loan(
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Get a specific loan by ID."""
    loan = await ledger.get_loan(loan_id)
    _ensure_can_view(actor, loan)
    return loan


@router.put("/loans/{loan_id}", response_model=Loan, tags=["Loans"])
async def update_loan(
    loan_data: LoanUpdate,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Edit a pending loan."""
    return await ledger.update_loan(
        loan_id,
        actor,
        amount=loan_data.amount,
        reason=loan_data.reason,
        emi_months=loan_data.emi_months,
    )


@router.post("/loans/{loan_id}/approve", response_model=Loan, tags=["Loans"])
async def approve_loan(
    approval: LoanApprove,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Approve and disburse a pending loan."""
    return await ledger.approve_loan(
        loan_id,
        actor,
        approved_amount=approval.approved_amount,
        comments=approval.comments,
    )


@router.post("/loans/{loan_id}/reject", response_model=Loan, tags=["Loans"])
async def reject_loan(
    rejection: LoanReject,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Reject a pending loan."""
    return await ledger.reject_loan(loan_id, actor, rejection.reason)


@router.post("/loans/{loan_id}/max-loan-override/decision", response_model=ResolvedRequest, tags=["Approvals"])
async def resolve_max_loan_override(
    decision: DecisionRequest,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Approve or reject the loan's max-loan override."""
    return await ledger.resolve_max_loan_override(loan_id, decision.decision, actor, comments=decision.comments)


# ===========================================
# SKIP EMI
# ===========================================

@router.post(
    "/loans/{loan_id}/skip-emi",
    response_model=PendingRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["Skip EMI"],
)
async def request_skip_emi(
    skip_data: SkipEmiCreate,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Request to skip the EMI for one month."""
    return await ledger.request_skip_emi(loan_id, skip_data.month, actor, skip_data.reason)


@router.post("/loans/{loan_id}/skip-emi/{month}/decision", response_model=ResolvedRequest, tags=["Skip EMI"])
async def resolve_skip_emi(
    decision: DecisionRequest,
    loan_id: str = Path(..., description="Loan ID"),
    month: str = Path(..., description="Month (YYYY-MM)"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Approve or reject a skip-EMI request."""
    return await ledger.resolve_skip_emi(loan_id, month, decision.decision, actor, comments=decision.comments)


# ===========================================
# SCHEDULE & PAYMENTS
# ===========================================

@router.get("/loans/{loan_id}/schedule", response_model=LoanSchedule, tags=["Repayments"])
async def get_loan_schedule(
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Repayment schedule of an approved loan."""
    loan = await ledger.get_loan(loan_id)
    _ensure_can_view(actor, loan)
    return build_schedule(loan)


@router.get("/loans/{loan_id}/due/{month}", response_model=DueLine, tags=["Repayments"])
async def get_loan_due(
    loan_id: str = Path(..., description="Loan ID"),
    month: str = Path(..., description="Month (YYYY-MM)"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Amount due on one loan for a month."""
    loan = await ledger.get_loan(loan_id)
    _ensure_can_view(actor, loan)
    return due_line(loan, month)


@router.post(
    "/loans/{loan_id}/payments",
    response_model=Loan,
    status_code=status.HTTP_201_CREATED,
    tags=["Repayments"],
)
async def record_payroll_credit(
    credit: PayrollCreditCreate,
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    reconciler: BalanceReconcilerService = Depends(get_balance_reconciler),
):
    """Record an EMI deduction made by payroll."""
    require_permission(actor, LoanPermission.RECORD_PAYROLL_CREDIT)
    return await reconciler.record_payroll_credit(loan_id, credit.month, credit.amount, credit.deducted_from)


@router.post("/loans/{loan_id}/reconcile", response_model=Loan, tags=["Repayments"])
async def reconcile_loan(
    loan_id: str = Path(..., description="Loan ID"),
    actor: Actor = Depends(get_current_actor),
    reconciler: BalanceReconcilerService = Depends(get_balance_reconciler),
):
    """Recompute a loan's balance from its recorded payments."""
    require_permission(actor, LoanPermission.RECORD_PAYROLL_CREDIT)
    return await reconciler.reconcile(loan_id)


# ===========================================
# APPROVALS QUEUE
# ===========================================

@router.get("/approvals/pending", response_model=List[PendingRequest], tags=["Approvals"])
async def list_pending_approvals(
    kind: Optional[RequestKind] = Query(None, description="Filter by request kind"),
    actor: Actor = Depends(get_current_actor),
    ledger: LoanLedgerService = Depends(get_loan_ledger),
):
    """Pending requests the actor can decide, oldest first."""
    allowed = {k for k, permission in _RESOLVE_PERMISSIONS.items() if has_permission(actor.role, permission)}
    if not allowed or (kind is not None and kind not in allowed):
        required = _RESOLVE_PERMISSIONS[kind] if kind else LoanPermission.APPROVE_LOAN
        raise InsufficientPermissionsException(required.value, actor.role.value)

    pending = await ledger.list_pending_requests(kind)
    return [request for request in pending if request.kind in allowed]


# ===========================================
# PAYROLL INTEGRATION
# ===========================================

@router.get("/payroll/employees/{employee_id}/due/{month}", response_model=DueAmountResponse, tags=["Payroll"])
async def get_employee_due(
    employee_id: str = Path(..., description="Employee ID"),
    month: str = Path(..., description="Month (YYYY-MM)"),
    actor: Actor = Depends(get_current_actor),
    port: PayrollIntegrationPort = Depends(get_payroll_port),
):
    """Total EMI to deduct from an employee for a month."""
    if actor.employee_id != employee_id:
        require_permission(actor, LoanPermission.VIEW_ALL_LOANS)
    lines = await port.due_breakdown(employee_id, month)
    return DueAmountResponse(
        employee_id=employee_id,
        month=normalize_month_key(month),
        total_due=sum(line.amount for line in lines),
        lines=lines,
    )


@router.post(
    "/payroll/employees/{employee_id}/credit/{month}",
    response_model=PayrollCreditResult,
    tags=["Payroll"],
)
async def credit_employee_deductions(
    batch: PayrollBatchCredit,
    employee_id: str = Path(..., description="Employee ID"),
    month: str = Path(..., description="Month (YYYY-MM)"),
    actor: Actor = Depends(get_current_actor),
    port: PayrollIntegrationPort = Depends(get_payroll_port),
):
    """Credit all of an employee's due EMIs for a month against a payroll batch."""
    require_permission(actor, LoanPermission.RECORD_PAYROLL_CREDIT)
    return await port.credit_deductions(employee_id, month, batch.batch_id)
