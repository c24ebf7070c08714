"""
HR Loan Ledger - Approval Schemas

Request identifiers and views for the approvable workflow. The three request
kinds (loan, skip-EMI, max-loan override) form a tagged variant keyed by
``RequestKind``; every request lives inside a loan document.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from hrloans.schemas.loan import Decision, LedgerRecord, Loan
from hrloans.utils.error_handling import ValidationException
from hrloans.utils.months import normalize_month_key


SKIP_EMI_SEGMENT = "skipEmiRequests"
OVERRIDE_SEGMENT = "maxLoanOverride"


class RequestKind(str, Enum):
    """Kinds of request that go through the approval workflow."""
    LOAN = "loan"
    SKIP_EMI = "skip_emi"
    MAX_LOAN_OVERRIDE = "max_loan_override"


class ApprovalRequestId(BaseModel):
    """
    Location of an approvable request.

    String form, relative to the loans collection:
    ``{loanId}``, ``{loanId}/skipEmiRequests/{YYYY-MM}`` or
    ``{loanId}/maxLoanOverride``.
    """

    model_config = ConfigDict(frozen=True)

    kind: RequestKind
    loan_id: str
    month: Optional[str] = None

    @classmethod
    def for_loan(cls, loan_id: str) -> "ApprovalRequestId":
        return cls(kind=RequestKind.LOAN, loan_id=loan_id)

    @classmethod
    def for_skip_emi(cls, loan_id: str, month: str) -> "ApprovalRequestId":
        return cls(kind=RequestKind.SKIP_EMI, loan_id=loan_id, month=normalize_month_key(month))

    @classmethod
    def for_override(cls, loan_id: str) -> "ApprovalRequestId":
        return cls(kind=RequestKind.MAX_LOAN_OVERRIDE, loan_id=loan_id)

    @classmethod
    def parse(cls, raw: str) -> "ApprovalRequestId":
        parts = [part for part in raw.strip().split("/") if part]
        if len(parts) == 1:
            return cls.for_loan(parts[0])
        if len(parts) == 2 and parts[1] == OVERRIDE_SEGMENT:
            return cls.for_override(parts[0])
        if len(parts) == 3 and parts[1] == SKIP_EMI_SEGMENT:
            return cls.for_skip_emi(parts[0], parts[2])
        raise ValidationException(message=f"Malformed approval request id: {raw}", field="request_id")

    def __str__(self) -> str:
        if self.kind == RequestKind.SKIP_EMI:
            return f"{self.loan_id}/{SKIP_EMI_SEGMENT}/{self.month}"
        if self.kind == RequestKind.MAX_LOAN_OVERRIDE:
            return f"{self.loan_id}/{OVERRIDE_SEGMENT}"
        return self.loan_id


class ApprovalRequestView(LedgerRecord):
    """Flattened view of an approvable request for queues and responses."""
    request_id: str
    kind: RequestKind
    loan_id: str
    month: Optional[str] = None
    employee_id: str
    employee_name: Optional[str] = None
    amount: Optional[int] = None
    status: str
    requested_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    reason: Optional[str] = None


class PendingRequest(ApprovalRequestView):
    """A request awaiting a decision."""


class ResolvedRequest(ApprovalRequestView):
    """A request after approval or rejection, with the updated loan."""
    decision: Decision
    resolved_by: str
    resolved_at: datetime
    comments: Optional[str] = None
    loan: Loan
