"""
HR Loan Ledger - Payroll Integration Port

What the monthly payroll run asks of the loan ledger: how much to deduct from an
employee for a month, and confirmation of the deductions it made.
"""

import logging
from typing import Any, List

from hrloans.schemas.loan import DueLine, LoanStatus, PayrollCreditResult
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.emi_scheduler import due_line
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.utils.error_handling import ConflictException, DuplicatePaymentException, EmiSkippedException
from hrloans.utils.months import normalize_month_key

logger = logging.getLogger(__name__)


class PayrollIntegrationPort:
    """Loan deductions for payroll runs."""

    def __init__(self, ledger: LoanLedgerService, reconciler: BalanceReconcilerService):
        self.ledger = ledger
        self.reconciler = reconciler

    async def due_breakdown(self, employee_id: str, month: Any) -> List[DueLine]:
        """Per-loan due lines for the employee's approved loans disbursed on or before ``month``."""
        month = normalize_month_key(month)
        await self.ledger.get_employee(employee_id)

        loans = await self.ledger.list_loans(employee_id=employee_id, status=LoanStatus.APPROVED)
        return [
            due_line(loan, month)
            for loan in loans
            if loan.disbursement_month is not None and loan.disbursement_month <= month
        ]

    async def due_amount(self, employee_id: str, month: Any) -> int:
        """Total EMI to deduct from the employee for ``month``."""
        return sum(line.amount for line in await self.due_breakdown(employee_id, month))

    async def credit_deductions(self, employee_id: str, month: Any, batch_id: str) -> PayrollCreditResult:
        """
        Credit every non-zero due line for ``month`` against payroll batch ``batch_id``.

        Loans already credited for the month (including by a concurrent run) or
        whose month was skipped after the due lines were read are reported as
        skipped rather than failing the batch.
        """
        month = normalize_month_key(month)
        result = PayrollCreditResult(employee_id=employee_id, month=month, batch_id=batch_id)

        for line in await self.due_breakdown(employee_id, month):
            if line.amount <= 0:
                result.skipped.append(line)
                continue
            try:
                loan = await self.reconciler.record_payroll_credit(line.loan_id, month, line.amount, batch_id)
            except ConflictException as exc:
                logger.info(f"Skipping loan {line.loan_id} for {month} in batch {batch_id}: {exc.message}")
                result.skipped.append(
                    line.model_copy(
                        update={
                            "amount": 0,
                            "skipped": line.skipped or isinstance(exc, EmiSkippedException),
                            "already_credited": isinstance(exc, DuplicatePaymentException),
                        }
                    )
                )
                continue
            result.credited.append(line.model_copy(update={"remaining_balance": loan.remaining_balance}))
            result.total_credited += line.amount

        logger.info(
            f"Payroll batch {batch_id}: credited {result.total_credited} across "
            f"{len(result.credited)} loan(s) for employee {employee_id} in {month}"
        )
        return result
