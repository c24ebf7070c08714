"""
HR Loan Ledger - Schemas Package

Pydantic schemas for ledger records and request/response validation.
"""

from hrloans.schemas.loan import (
    # Types & enums
    MonthKey,
    ApprovalStatus,
    LoanStatus,
    Decision,
    # Records
    Actor,
    Employee,
    EmployeeSalary,
    ApprovableRecord,
    SkipEmiRequest,
    MaxLoanOverride,
    EmiPayment,
    Loan,
    # Request bodies
    LoanCreate,
    LoanUpdate,
    LoanApprove,
    LoanReject,
    SkipEmiCreate,
    DecisionRequest,
    PayrollCreditCreate,
    PayrollBatchCredit,
    # Responses
    ScheduledInstallment,
    LoanSchedule,
    DueLine,
    DueAmountResponse,
    PayrollCreditResult,
    LoanSummary,
)
from hrloans.schemas.approval import (
    RequestKind,
    ApprovalRequestId,
    ApprovalRequestView,
    PendingRequest,
    ResolvedRequest,
)
