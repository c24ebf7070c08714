"""
HR Loan Ledger - Balance Reconciler

Owns the remaining balance of approved loans. The balance is always derived
from the payroll-credited EMI payments, never decremented in place:

    remainingBalance = max(0, approvedAmount - sum(credited payments))

A loan whose balance reaches zero after at least one credited payment moves to
Repaid. Payment insertion, balance recompute and the status transition are a
single store transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from hrloans.config import settings
from hrloans.schemas.loan import EmiPayment, Loan, LoanStatus
from hrloans.services.document_store import DocumentStore, join_path
from hrloans.utils.error_handling import (
    ConflictException,
    DuplicatePaymentException,
    EmiSkippedException,
    LoanNotFoundException,
    ValidationException,
    validate_amount,
)
from hrloans.utils.months import normalize_month_key

logger = logging.getLogger(__name__)


def remaining_balance(loan: Loan) -> int:
    """Outstanding amount on a loan. Zero for loans that were never approved."""
    if loan.approved_amount is None:
        return 0
    return max(0, loan.approved_amount - loan.credited_total)


def apply_balance(loan: Loan) -> bool:
    """
    Bring ``remaining_balance`` and the Repaid transition in line with the
    credited payments. Returns True if the loan changed.
    """
    if loan.approved_amount is None:
        return False

    changed = False
    balance = remaining_balance(loan)
    if loan.remaining_balance != balance:
        loan.remaining_balance = balance
        changed = True

    if (
        balance == 0
        and loan.has_credited_payments
        and loan.status_value == LoanStatus.APPROVED.value
    ):
        loan.status = LoanStatus.REPAID
        changed = True
    return changed


class BalanceReconcilerService:
    """Records payroll credits and keeps loan balances consistent."""

    def __init__(
        self,
        store: DocumentStore,
        loans_path: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.loans_path = loans_path or settings.loans_path
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _loan_path(self, loan_id: str) -> str:
        return join_path(self.loans_path, loan_id)

    async def record_payroll_credit(
        self,
        loan_id: str,
        month: Any,
        amount: int,
        deducted_from: str,
    ) -> Loan:
        """
        Record that payroll deducted ``amount`` for ``month`` on a loan.

        Raises:
            ValidationException: non-positive amount, blank batch id, or a month
                before disbursement
            DuplicatePaymentException: a payment is already recorded for the month
            EmiSkippedException: the month carries an approved skip
            ConflictException: the loan is not Approved
            LoanNotFoundException: no such loan
        """
        month = normalize_month_key(month)
        amount = validate_amount(amount)
        if not deducted_from or not str(deducted_from).strip():
            raise ValidationException(
                message="Payroll batch identifier is required",
                field="deducted_from",
            )
        deducted_from = str(deducted_from).strip()
        now = self.clock()

        def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if current is None:
                raise LoanNotFoundException(loan_id)
            loan = Loan.from_document(current)

            if month in loan.emi_payments:
                raise DuplicatePaymentException(loan_id, month)
            if loan.status_value != LoanStatus.APPROVED.value:
                raise ConflictException(
                    message=f"Cannot credit payroll deduction to a loan in status {loan.status_value}",
                    resource_type="Loan",
                )
            if loan.has_approved_skip(month):
                raise EmiSkippedException(loan_id, month)
            if loan.disbursement_month is None or month < loan.disbursement_month:
                raise ValidationException(
                    message=f"Month {month} is before the loan was disbursed",
                    field="month",
                    details={"disbursement_month": loan.disbursement_month},
                )

            outstanding = remaining_balance(loan)
            if amount > outstanding:
                logger.warning(
                    f"Payroll credit {amount} for loan {loan_id} {month} exceeds outstanding balance {outstanding}"
                )

            payments = dict(loan.emi_payments)
            payments[month] = EmiPayment(
                month=month,
                amount=amount,
                paid_at=now,
                payroll_credited=True,
                remaining_balance=max(0, outstanding - amount),
                deducted_from=deducted_from,
            )
            loan.emi_payments = dict(sorted(payments.items()))
            apply_balance(loan)
            loan.updated_at = now
            return loan.to_document()

        document = await self.store.transaction(self._loan_path(loan_id), apply)
        loan = Loan.from_document(document)

        logger.info(
            f"Credited {amount} to loan {loan_id} for {month} from {deducted_from}; "
            f"remaining balance {loan.remaining_balance}, status {loan.status_value}"
        )
        return loan

    async def reconcile(self, loan_id: str) -> Loan:
        """Recompute a loan's stored balance from its payments. No write if already consistent."""

        def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            if current is None:
                raise LoanNotFoundException(loan_id)
            loan = Loan.from_document(current)
            if not apply_balance(loan):
                return None
            loan.updated_at = self.clock()
            return loan.to_document()

        document = await self.store.transaction(self._loan_path(loan_id), apply)
        loan = Loan.from_document(document)

        if loan.status_value == LoanStatus.REPAID.value and remaining_balance(loan) > 0:
            logger.error(f"Loan {loan_id} is Repaid but payments leave {remaining_balance(loan)} outstanding")
        return loan
