"""
HR Loan Ledger - EMI Scheduler

Pure functions deriving the repayment schedule of an approved loan.

Rounding rule (whole currency units):
- emiAmount = round_half_up(approvedAmount / emiMonths)
- if that would make the last installment negative, floor the division instead
- final installment = approvedAmount - emiAmount * (emiMonths - 1)

so the installments of a full schedule always sum to the approved amount.

The schedule starts in the disbursement month and runs ``emiMonths`` months.
An approved skip sets that month's due to zero without extending the term;
the deferred amount is collected after the final scheduled month as run-off
installments of at most ``emiAmount`` until the balance is cleared.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List

from hrloans.schemas.loan import DueLine, Loan, LoanSchedule, LoanStatus, ScheduledInstallment
from hrloans.services.balance_reconciler import remaining_balance
from hrloans.utils.error_handling import (
    InvalidAmountException,
    NotScheduledException,
    ValidationException,
)
from hrloans.utils.months import add_months, month_range, months_between, normalize_month_key


# ===========================================
# INSTALLMENT ARITHMETIC
# ===========================================

def compute_emi_amount(approved_amount: int, emi_months: int) -> int:
    """Monthly installment for a loan of ``approved_amount`` over ``emi_months``."""
    if isinstance(emi_months, bool) or not isinstance(emi_months, int) or emi_months < 1:
        raise ValidationException(message="EMI months must be a positive integer", field="emi_months")
    if isinstance(approved_amount, bool) or not isinstance(approved_amount, int) or approved_amount < 1:
        raise InvalidAmountException(approved_amount, "approved_amount")

    emi = int(
        (Decimal(approved_amount) / Decimal(emi_months)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    if emi * (emi_months - 1) > approved_amount:
        # Rounding up would leave a negative final installment (e.g. 15 over 10 months)
        emi = approved_amount // emi_months
    return emi


def final_installment(approved_amount: int, emi_months: int, emi_amount: int = None) -> int:
    """Amount of the last scheduled installment."""
    if emi_amount is None:
        emi_amount = compute_emi_amount(approved_amount, emi_months)
    return approved_amount - emi_amount * (emi_months - 1)


# ===========================================
# SCHEDULE
# ===========================================

def _require_scheduled(loan: Loan, month: str) -> None:
    if loan.status_value != LoanStatus.APPROVED.value:
        raise NotScheduledException(loan.id, month, f"loan is {loan.status_value}")
    if loan.disbursement_month is None or loan.approved_amount is None or loan.emi_amount is None:
        raise NotScheduledException(loan.id, month, "loan has not been disbursed")
    if month < loan.disbursement_month:
        raise NotScheduledException(
            loan.id, month, f"month is before disbursement month {loan.disbursement_month}"
        )


def scheduled_months(loan: Loan) -> List[str]:
    """The ``emiMonths`` months of the regular schedule."""
    if loan.disbursement_month is None:
        return []
    return month_range(loan.disbursement_month, loan.emi_months)


def is_skipped(loan: Loan, month: str) -> bool:
    return loan.has_approved_skip(month)


def _runoff_installment(loan: Loan, outstanding: int) -> int:
    if loan.emi_amount <= 0:
        return outstanding
    return min(loan.emi_amount, outstanding)


def _scheduled_amount(loan: Loan, month: str) -> int:
    offset = months_between(loan.disbursement_month, month)
    if offset < loan.emi_months - 1:
        return loan.emi_amount
    if offset == loan.emi_months - 1:
        return final_installment(loan.approved_amount, loan.emi_months, loan.emi_amount)
    return _runoff_installment(loan, remaining_balance(loan))


def due_for_month(loan: Loan, month: Any) -> int:
    """
    Installment owed on ``loan`` for ``month``.

    Zero for an approved skip. Months after the final scheduled one owe the
    smaller of ``emiAmount`` and the remaining balance.

    Raises:
        NotScheduledException: loan is not Approved, or month precedes disbursement
    """
    month = normalize_month_key(month)
    _require_scheduled(loan, month)
    if is_skipped(loan, month):
        return 0
    return _scheduled_amount(loan, month)


def due_line(loan: Loan, month: Any) -> DueLine:
    """Due amount for one loan and month, net of an existing payment and capped at the balance."""
    month = normalize_month_key(month)
    balance = remaining_balance(loan)
    already_credited = month in loan.emi_payments
    skipped = is_skipped(loan, month)

    amount = 0 if already_credited else min(due_for_month(loan, month), balance)
    return DueLine(
        loan_id=loan.id,
        month=month,
        amount=amount,
        remaining_balance=balance,
        skipped=skipped,
        already_credited=already_credited,
    )


def build_schedule(loan: Loan) -> LoanSchedule:
    """
    Full repayment schedule of an approved (or repaid) loan, including any
    run-off months that collect skipped installments.
    """
    if loan.approved_amount is None or loan.emi_amount is None or loan.disbursement_month is None:
        raise NotScheduledException(loan.id, "-", f"loan is {loan.status_value} and has no schedule")

    final_amount = final_installment(loan.approved_amount, loan.emi_months, loan.emi_amount)
    installments: List[ScheduledInstallment] = []
    deferred = 0

    for number, month in enumerate(scheduled_months(loan), start=1):
        is_final = number == loan.emi_months
        amount = final_amount if is_final else loan.emi_amount
        skipped = is_skipped(loan, month)
        if skipped:
            deferred += amount
        payment = loan.emi_payments.get(month)
        installments.append(
            ScheduledInstallment(
                month=month,
                installment_number=number,
                scheduled_amount=amount,
                due_amount=0 if skipped else amount,
                skipped=skipped,
                paid_amount=payment.amount if payment else None,
                is_final=is_final,
            )
        )

    month = add_months(loan.disbursement_month, loan.emi_months)
    while deferred > 0:
        amount = _runoff_installment(loan, deferred)
        payment = loan.emi_payments.get(month)
        installments.append(
            ScheduledInstallment(
                month=month,
                scheduled_amount=amount,
                due_amount=amount,
                paid_amount=payment.amount if payment else None,
            )
        )
        deferred -= amount
        month = add_months(month, 1)

    return LoanSchedule(
        loan_id=loan.id,
        approved_amount=loan.approved_amount,
        emi_months=loan.emi_months,
        emi_amount=loan.emi_amount,
        final_amount=final_amount,
        installments=installments,
    )
