"""
HR Loan Ledger - Loan Schemas

Pydantic models for the ledger records (stored as camelCase documents) and the
request/response bodies of the loan API.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hrloans.utils.months import month_key_for, ordered_month_map, parse_month_key
from hrloans.utils.permissions import ActorRole


# ===========================================
# TYPES
# ===========================================

MonthKey = Annotated[str, BeforeValidator(parse_month_key)]


class ApprovalStatus(str, Enum):
    """Status of a skip-EMI request or max-loan override."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class LoanStatus(str, Enum):
    """Loan status."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REPAID = "Repaid"


TERMINAL_STATUSES = frozenset({"Approved", "Rejected", "Repaid"})


class Decision(str, Enum):
    """Outcome chosen by an approver."""
    APPROVE = "approve"
    REJECT = "reject"


# ===========================================
# ACTORS & EMPLOYEES
# ===========================================

class Actor(BaseModel):
    """The user performing an operation. Passed explicitly into every mutating call."""
    id: str
    name: str = ""
    role: ActorRole
    employee_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class LedgerRecord(BaseModel):
    """Base for records persisted in the document store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the stored (camelCase, JSON-safe) form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        return cls.model_validate(data)


class EmployeeSalary(LedgerRecord):
    gross_monthly: int = 0


class Employee(LedgerRecord):
    """Employee master record (read-only to the loan ledger)."""
    id: str
    employee_id: Optional[str] = None
    name: str
    department: Optional[str] = None
    salary: EmployeeSalary = Field(default_factory=EmployeeSalary)
    joining_date: Optional[date] = None
    status: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Loan actions require status 'active' (case-insensitive)."""
        if not self.status:
            return False
        return self.status.strip().lower() == "active"


# ===========================================
# APPROVABLE RECORDS
# ===========================================

class ApprovableRecord(LedgerRecord):
    """
    Shared approval state for loans, skip-EMI requests and max-loan overrides.

    Approved, Rejected and Repaid are terminal: once set they never change.
    """
    status: str = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    comments: Optional[str] = None

    @property
    def status_value(self) -> str:
        return str(getattr(self.status, "value", self.status))

    @property
    def is_pending(self) -> bool:
        return self.status_value == ApprovalStatus.PENDING.value

    @property
    def is_approved(self) -> bool:
        return self.status_value == ApprovalStatus.APPROVED.value

    @property
    def is_terminal(self) -> bool:
        return self.status_value in TERMINAL_STATUSES

    def _coerce_status(self, status: ApprovalStatus):
        return status

    def mark_resolved(self, decision: Decision, actor: Actor, at: datetime, comments: Optional[str] = None) -> None:
        """Write the decision onto a Pending record."""
        if decision == Decision.APPROVE:
            self.status = self._coerce_status(ApprovalStatus.APPROVED)
            self.approved_by = actor.id
            self.approved_at = at
        else:
            self.status = self._coerce_status(ApprovalStatus.REJECTED)
            self.rejected_by = actor.id
            self.rejected_at = at
        if comments:
            self.comments = comments


class SkipEmiRequest(ApprovableRecord):
    """Request to suspend the EMI for one month."""
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_by: str
    requested_at: datetime
    reason: str


class MaxLoanOverride(ApprovableRecord):
    """Request to lend above the employee's standard loan ceiling."""
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_amount: int
    requested_by: str
    requested_at: datetime
    reason: Optional[str] = None
    employee_gross: int
    standard_max: int


class EmiPayment(LedgerRecord):
    """An EMI deduction reported by the payroll run."""
    month: MonthKey
    amount: int
    paid_at: datetime
    payroll_credited: bool = False
    remaining_balance: int
    deducted_from: Optional[str] = None


class Loan(ApprovableRecord):
    """Employee loan with its nested skip requests, override and EMI payments."""
    id: Optional[str] = None
    employee_id: str
    employee_name: Optional[str] = None
    requested_amount: int
    approved_amount: Optional[int] = None
    reason: str
    request_date: date
    emi_months: int
    emi_amount: Optional[int] = None
    status: LoanStatus = LoanStatus.PENDING
    disbursed_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    skip_emi_requests: Annotated[Dict[str, SkipEmiRequest], BeforeValidator(ordered_month_map)] = Field(
        default_factory=dict
    )
    max_loan_override: Optional[MaxLoanOverride] = None
    remaining_balance: Optional[int] = None
    emi_payments: Annotated[Dict[str, EmiPayment], BeforeValidator(ordered_month_map)] = Field(
        default_factory=dict
    )

    def _coerce_status(self, status: ApprovalStatus) -> LoanStatus:
        return LoanStatus(status.value)

    @property
    def disbursement_month(self) -> Optional[str]:
        if self.disbursed_date is None:
            return None
        return month_key_for(self.disbursed_date)

    def has_approved_skip(self, month: str) -> bool:
        request = self.skip_emi_requests.get(month)
        return request is not None and request.is_approved

    def credited_payment(self, month: str) -> Optional[EmiPayment]:
        payment = self.emi_payments.get(month)
        if payment is not None and payment.payroll_credited:
            return payment
        return None

    @property
    def credited_total(self) -> int:
        return sum(p.amount for p in self.emi_payments.values() if p.payroll_credited)

    @property
    def has_credited_payments(self) -> bool:
        return any(p.payroll_credited for p in self.emi_payments.values())


# ===========================================
# API REQUEST BODIES
# ===========================================

class LoanCreate(BaseModel):
    """Create loan request."""
    employee_id: str
    amount: int = Field(..., description="Requested amount in whole currency units")
    reason: str
    emi_months: int


class LoanUpdate(BaseModel):
    """Edit a pending loan request."""
    amount: Optional[int] = None
    reason: Optional[str] = None
    emi_months: Optional[int] = None


class LoanApprove(BaseModel):
    """Approve a loan, optionally for a different amount than requested."""
    approved_amount: Optional[int] = None
    comments: Optional[str] = None


class LoanReject(BaseModel):
    """Reject a loan."""
    reason: str


class SkipEmiCreate(BaseModel):
    """Request to skip the EMI for a month."""
    month: str
    reason: str


class DecisionRequest(BaseModel):
    """Approve or reject a pending request."""
    decision: Decision
    comments: Optional[str] = None


class PayrollCreditCreate(BaseModel):
    """Payroll run confirming an EMI deduction for one loan and month."""
    month: str
    amount: int
    deducted_from: str


class PayrollBatchCredit(BaseModel):
    """Payroll run crediting all due EMIs of an employee for a month."""
    batch_id: str


# ===========================================
# API RESPONSES
# ===========================================

class ScheduledInstallment(LedgerRecord):
    """One month of a loan's repayment schedule."""
    month: str
    installment_number: Optional[int] = None
    scheduled_amount: int
    due_amount: int
    skipped: bool = False
    paid_amount: Optional[int] = None
    is_final: bool = False


class LoanSchedule(LedgerRecord):
    loan_id: str
    approved_amount: int
    emi_months: int
    emi_amount: int
    final_amount: int
    installments: List[ScheduledInstallment]


class DueLine(LedgerRecord):
    """Amount due on one loan for a month."""
    loan_id: str
    month: str
    amount: int
    remaining_balance: int
    skipped: bool = False
    already_credited: bool = False


class DueAmountResponse(LedgerRecord):
    employee_id: str
    month: str
    total_due: int
    lines: List[DueLine]


class PayrollCreditResult(LedgerRecord):
    """Outcome of crediting a payroll batch for one employee."""
    employee_id: str
    month: str
    batch_id: str
    credited: List[DueLine] = Field(default_factory=list)
    skipped: List[DueLine] = Field(default_factory=list)
    total_credited: int = 0


class LoanSummary(LedgerRecord):
    """Loan history summary."""
    total_loans: int
    pending_loans: int
    approved_loans: int
    rejected_loans: int
    repaid_loans: int
    total_approved_amount: int
    total_outstanding: int

