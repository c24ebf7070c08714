"""
HR Loan Ledger - Loan Ledger Tests

Tests for loan requests, approvals, rejections, edits, max-loan overrides and
skip-EMI requests.
"""

from datetime import date

import pytest

from hrloans.config import Settings
from hrloans.schemas.loan import Actor, Decision, Loan, LoanStatus
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.emi_scheduler import due_for_month
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.utils.error_handling import (
    AuthorizationException,
    ConflictException,
    EmployeeNotFoundException,
    InactiveEmployeeException,
    InsufficientPermissionsException,
    InvalidAmountException,
    LoanNotFoundException,
    PrecheckFailedException,
    RequestAlreadyResolvedException,
    ValidationException,
)


# =============================================================================
# REQUESTS
# =============================================================================

class TestRequestLoan:
    """request_loan validation and the ceiling override."""

    @pytest.mark.asyncio
    async def test_creates_pending_loan(self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor):
        loan = await ledger.request_loan(employee_id, 120_000, "  Medical bills ", 12, hr_officer)

        assert loan.id
        assert loan.status == LoanStatus.PENDING
        assert loan.employee_name == "Adaeze Okafor"
        assert loan.requested_amount == 120_000
        assert loan.reason == "Medical bills"
        assert loan.request_date == date(2025, 1, 15)
        assert loan.created_by == "u-hr"
        assert loan.approved_amount is None
        assert loan.max_loan_override is None

    @pytest.mark.asyncio
    async def test_employee_can_request_for_self(
        self, ledger: LoanLedgerService, employee_id: str, employee_actor: Actor
    ):
        loan = await ledger.request_loan(employee_id, 30_000, "Textbooks", 3, employee_actor)
        assert loan.created_by == employee_actor.id

    @pytest.mark.asyncio
    async def test_above_ceiling_attaches_pending_override(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor
    ):
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        override = loan.max_loan_override
        assert override is not None
        assert override.is_pending
        assert override.requested_amount == 500_000
        assert override.employee_gross == 100_000
        assert override.standard_max == 300_000

    @pytest.mark.asyncio
    async def test_at_ceiling_needs_no_override(self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor):
        loan = await ledger.request_loan(employee_id, 300_000, "Home renovation", 60, hr_officer)
        assert loan.max_loan_override is None

    @pytest.mark.asyncio
    async def test_injected_ceiling_policy(self, store, clock, employee_id: str, hr_officer: Actor):
        ledger = LoanLedgerService(store, standard_max=lambda gross: gross // 2, clock=clock)

        loan = await ledger.request_loan(employee_id, 60_000, "Wedding", 12, hr_officer)

        assert loan.max_loan_override.standard_max == 50_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5_000])
    async def test_rejects_non_positive_amount(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor, amount
    ):
        with pytest.raises(InvalidAmountException):
            await ledger.request_loan(employee_id, amount, "Rent", 6, hr_officer)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("months", [0, -1, 61])
    async def test_rejects_bad_term(self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor, months):
        with pytest.raises(ValidationException):
            await ledger.request_loan(employee_id, 50_000, "Rent", months, hr_officer)

    @pytest.mark.asyncio
    async def test_rejects_blank_reason(self, ledger: LoanLedgerService, employee_id: str, hr_officer: Actor):
        with pytest.raises(ValidationException):
            await ledger.request_loan(employee_id, 50_000, "   ", 6, hr_officer)

    @pytest.mark.asyncio
    async def test_rejects_inactive_employee(
        self, ledger: LoanLedgerService, inactive_employee_id: str, hr_officer: Actor
    ):
        with pytest.raises(InactiveEmployeeException):
            await ledger.request_loan(inactive_employee_id, 50_000, "Rent", 6, hr_officer)

    @pytest.mark.asyncio
    async def test_active_status_is_case_insensitive(
        self, ledger: LoanLedgerService, other_employee_id: str, hr_officer: Actor
    ):
        loan = await ledger.request_loan(other_employee_id, 50_000, "Rent", 6, hr_officer)
        assert loan.status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_employee(self, ledger: LoanLedgerService, hr_officer: Actor):
        with pytest.raises(EmployeeNotFoundException):
            await ledger.request_loan("nobody", 50_000, "Rent", 6, hr_officer)

    @pytest.mark.asyncio
    async def test_employee_cannot_request_for_someone_else(
        self, ledger: LoanLedgerService, other_employee_id: str, employee_actor: Actor
    ):
        with pytest.raises(AuthorizationException):
            await ledger.request_loan(other_employee_id, 50_000, "Rent", 6, employee_actor)

    @pytest.mark.asyncio
    async def test_payroll_role_cannot_request(
        self, ledger: LoanLedgerService, employee_id: str, payroll_clerk: Actor
    ):
        with pytest.raises(InsufficientPermissionsException):
            await ledger.request_loan(employee_id, 50_000, "Rent", 6, payroll_clerk)

    @pytest.mark.asyncio
    async def test_net_pay_cannot_go_negative(
        self, ledger: LoanLedgerService, approved_loan: Loan, employee_id: str, hr_officer: Actor
    ):
        """Gross 100,000 with a 10,000 EMI already running this month."""
        await ledger.request_loan(employee_id, 90_000, "Rent", 1, hr_officer)

        with pytest.raises(ValidationException) as exc_info:
            await ledger.request_loan(employee_id, 90_001, "Rent", 1, hr_officer)

        assert exc_info.value.details["current_emis"] == 10_000


# =============================================================================
# APPROVAL & REJECTION
# =============================================================================

class TestApproveLoan:
    """approve_loan side effects and prechecks."""

    @pytest.mark.asyncio
    async def test_approval_disburses(self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager):
        loan = await ledger.request_loan(employee_id, 100_000, "Medical bills", 3, hr_officer)

        approved = await ledger.approve_loan(loan.id, manager)

        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_amount == 100_000
        assert approved.emi_amount == 33_333
        assert approved.disbursed_date == date(2025, 1, 15)
        assert approved.remaining_balance == 100_000
        assert approved.approved_by == "u-manager"

    @pytest.mark.asyncio
    async def test_partial_approval(self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        approved = await ledger.approve_loan(loan.id, manager, approved_amount=90_000)

        assert approved.approved_amount == 90_000
        assert approved.emi_amount == 7_500
        assert approved.remaining_balance == 90_000

    @pytest.mark.asyncio
    async def test_cannot_approve_more_than_requested(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager
    ):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        with pytest.raises(ValidationException):
            await ledger.approve_loan(loan.id, manager, approved_amount=120_001)

        assert (await ledger.get_loan(loan.id)).status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_zero_approved_amount(self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        with pytest.raises(InvalidAmountException):
            await ledger.approve_loan(loan.id, manager, approved_amount=0)

    @pytest.mark.asyncio
    async def test_hr_cannot_approve(self, ledger: LoanLedgerService, employee_id: str, hr_officer):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        with pytest.raises(InsufficientPermissionsException):
            await ledger.approve_loan(loan.id, hr_officer)

    @pytest.mark.asyncio
    async def test_unknown_loan(self, ledger: LoanLedgerService, manager):
        with pytest.raises(LoanNotFoundException):
            await ledger.approve_loan("missing", manager)

    @pytest.mark.asyncio
    async def test_pending_override_blocks_approval(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager
    ):
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        with pytest.raises(PrecheckFailedException) as exc_info:
            await ledger.approve_loan(loan.id, manager)

        assert exc_info.value.override_request_id == f"{loan.id}/maxLoanOverride"
        assert (await ledger.get_loan(loan.id)).status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_approved_override_unblocks_approval(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager, admin
    ):
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        with pytest.raises(InsufficientPermissionsException):
            await ledger.resolve_max_loan_override(loan.id, Decision.APPROVE, manager)

        resolved = await ledger.resolve_max_loan_override(loan.id, Decision.APPROVE, admin)
        assert resolved.loan.max_loan_override.is_approved
        assert resolved.loan.status == LoanStatus.PENDING

        approved = await ledger.approve_loan(loan.id, manager)
        assert approved.approved_amount == 500_000

    @pytest.mark.asyncio
    async def test_rejected_override_rejects_loan(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager, admin
    ):
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        resolved = await ledger.resolve_max_loan_override(loan.id, Decision.REJECT, admin, comments="Too high")

        assert resolved.loan.max_loan_override.status_value == "Rejected"
        assert resolved.loan.status == LoanStatus.REJECTED
        assert resolved.loan.rejection_reason == "Max loan override rejected"
        assert resolved.loan.rejected_by == "u-admin"

        with pytest.raises(RequestAlreadyResolvedException):
            await ledger.approve_loan(loan.id, manager)

    @pytest.mark.asyncio
    async def test_cap_policy_keeps_loan_pending(self, store, clock, employee_id: str, hr_officer, manager, admin):
        ledger = LoanLedgerService(
            store, clock=clock, config=Settings(override_rejection_policy="cap_at_standard_max")
        )
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        resolved = await ledger.resolve_max_loan_override(loan.id, Decision.REJECT, admin)
        assert resolved.loan.status == LoanStatus.PENDING

        with pytest.raises(ValidationException):
            await ledger.approve_loan(loan.id, manager, approved_amount=300_001)

        approved = await ledger.approve_loan(loan.id, manager)
        assert approved.approved_amount == 300_000
        assert approved.emi_amount == 5_000


class TestRejectLoan:
    """reject_loan."""

    @pytest.mark.asyncio
    async def test_rejection_is_terminal(self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        rejected = await ledger.reject_loan(loan.id, manager, "Budget freeze")

        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejection_reason == "Budget freeze"
        assert rejected.approved_amount is None

        with pytest.raises(RequestAlreadyResolvedException):
            await ledger.approve_loan(loan.id, manager)
        with pytest.raises(RequestAlreadyResolvedException):
            await ledger.reject_loan(loan.id, manager, "Again")

    @pytest.mark.asyncio
    async def test_rejection_closes_pending_override(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager
    ):
        loan = await ledger.request_loan(employee_id, 500_000, "Home renovation", 60, hr_officer)

        rejected = await ledger.reject_loan(loan.id, manager, "Not this year")

        assert rejected.max_loan_override.status_value == "Rejected"
        assert await ledger.list_pending_requests() == []

    @pytest.mark.asyncio
    async def test_requires_reason(self, ledger: LoanLedgerService, employee_id: str, hr_officer, manager):
        loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)

        with pytest.raises(ValidationException):
            await ledger.reject_loan(loan.id, manager, " ")


# =============================================================================
# EDITS
# =============================================================================

class TestUpdateLoan:
    """update_loan on Pending loans."""

    @pytest.mark.asyncio
    async def test_creator_can_edit(self, ledger: LoanLedgerService, employee_id: str, employee_actor: Actor):
        loan = await ledger.request_loan(employee_id, 50_000, "Rent", 6, employee_actor)

        updated = await ledger.update_loan(loan.id, employee_actor, amount=60_000, emi_months=12)

        assert updated.requested_amount == 60_000
        assert updated.emi_months == 12
        assert updated.reason == "Rent"

    @pytest.mark.asyncio
    async def test_raising_above_ceiling_attaches_override(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer
    ):
        loan = await ledger.request_loan(employee_id, 200_000, "Rent", 24, hr_officer)

        updated = await ledger.update_loan(loan.id, hr_officer, amount=400_000)

        assert updated.max_loan_override.is_pending
        assert updated.max_loan_override.requested_amount == 400_000

    @pytest.mark.asyncio
    async def test_lowering_below_ceiling_drops_pending_override(
        self, ledger: LoanLedgerService, employee_id: str, hr_officer
    ):
        loan = await ledger.request_loan(employee_id, 400_000, "Rent", 48, hr_officer)

        updated = await ledger.update_loan(loan.id, hr_officer, amount=250_000)

        assert updated.max_loan_override is None

    @pytest.mark.asyncio
    async def test_cannot_edit_decided_loan(self, ledger: LoanLedgerService, approved_loan: Loan, hr_officer):
        with pytest.raises(ConflictException):
            await ledger.update_loan(approved_loan.id, hr_officer, reason="Changed my mind")

    @pytest.mark.asyncio
    async def test_other_employee_cannot_edit(
        self, ledger: LoanLedgerService, other_employee_id: str, hr_officer, employee_actor
    ):
        loan = await ledger.request_loan(other_employee_id, 50_000, "Rent", 6, hr_officer)

        with pytest.raises(AuthorizationException):
            await ledger.update_loan(loan.id, employee_actor, amount=10_000)

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, ledger: LoanLedgerService, employee_id: str, hr_officer):
        loan = await ledger.request_loan(employee_id, 50_000, "Rent", 6, hr_officer)

        with pytest.raises(ValidationException):
            await ledger.update_loan(loan.id, hr_officer)


# =============================================================================
# SKIP EMI
# =============================================================================

class TestSkipEmi:
    """Skip-EMI requests on approved loans."""

    @pytest.mark.asyncio
    async def test_request_and_approve_skip(
        self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor, manager
    ):
        pending = await ledger.request_skip_emi(approved_loan.id, "2025-3", employee_actor, "School fees")

        assert pending.request_id == f"{approved_loan.id}/skipEmiRequests/2025-03"
        assert pending.status == "Pending"
        assert pending.amount == 10_000

        resolved = await ledger.resolve_skip_emi(approved_loan.id, "2025-03", Decision.APPROVE, manager)
        loan = resolved.loan

        assert due_for_month(loan, "2025-03") == 0
        assert due_for_month(loan, "2025-04") == 10_000
        assert loan.emi_months == approved_loan.emi_months
        assert loan.remaining_balance == approved_loan.remaining_balance

    @pytest.mark.asyncio
    async def test_rejected_skip_keeps_installment(
        self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor, manager
    ):
        await ledger.request_skip_emi(approved_loan.id, "2025-03", employee_actor, "School fees")

        resolved = await ledger.resolve_skip_emi(approved_loan.id, "2025-03", Decision.REJECT, manager)

        assert due_for_month(resolved.loan, "2025-03") == 10_000

    @pytest.mark.asyncio
    async def test_duplicate_month(self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor):
        await ledger.request_skip_emi(approved_loan.id, "2025-03", employee_actor, "School fees")

        with pytest.raises(ValidationException):
            await ledger.request_skip_emi(approved_loan.id, "2025-03", employee_actor, "Again")

    @pytest.mark.asyncio
    async def test_month_already_credited(
        self, ledger: LoanLedgerService, reconciler: BalanceReconcilerService, approved_loan: Loan, employee_actor
    ):
        await reconciler.record_payroll_credit(approved_loan.id, "2025-02", 10_000, "PAY-2025-02")

        with pytest.raises(ValidationException):
            await ledger.request_skip_emi(approved_loan.id, "2025-02", employee_actor, "Too late")

    @pytest.mark.asyncio
    async def test_month_before_disbursement(self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor):
        with pytest.raises(ValidationException):
            await ledger.request_skip_emi(approved_loan.id, "2024-12", employee_actor, "Holidays")

    @pytest.mark.asyncio
    async def test_requires_approved_loan(self, ledger: LoanLedgerService, employee_id: str, hr_officer, employee_actor):
        loan = await ledger.request_loan(employee_id, 50_000, "Rent", 6, hr_officer)

        with pytest.raises(ValidationException):
            await ledger.request_skip_emi(loan.id, "2025-02", employee_actor, "Holidays")

    @pytest.mark.asyncio
    async def test_requires_reason(self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor):
        with pytest.raises(ValidationException):
            await ledger.request_skip_emi(approved_loan.id, "2025-02", employee_actor, "")

    @pytest.mark.asyncio
    async def test_employee_cannot_skip_someone_elses_loan(
        self, ledger: LoanLedgerService, approved_loan: Loan
    ):
        stranger = Actor(id="u-tunde", name="Tunde Bello", role="employee", employee_id="someone-else")

        with pytest.raises(AuthorizationException):
            await ledger.request_skip_emi(approved_loan.id, "2025-02", stranger, "Holidays")

    @pytest.mark.asyncio
    async def test_hr_cannot_decide_skip(self, ledger: LoanLedgerService, approved_loan: Loan, employee_actor, hr_officer):
        await ledger.request_skip_emi(approved_loan.id, "2025-03", employee_actor, "School fees")

        with pytest.raises(InsufficientPermissionsException):
            await ledger.resolve_skip_emi(approved_loan.id, "2025-03", Decision.APPROVE, hr_officer)


# =============================================================================
# QUERIES
# =============================================================================

class TestQueries:
    """get_loan / list_loans / get_loan_summary."""

    @pytest.mark.asyncio
    async def test_get_missing_loan(self, ledger: LoanLedgerService):
        with pytest.raises(LoanNotFoundException):
            await ledger.get_loan("missing")

    @pytest.mark.asyncio
    async def test_ids_must_be_single_segments(self, ledger: LoanLedgerService, approved_loan: Loan, employee_id):
        """A slash would otherwise address data nested inside the document."""
        with pytest.raises(LoanNotFoundException):
            await ledger.get_loan(f"{approved_loan.id}/emiPayments")
        with pytest.raises(LoanNotFoundException):
            await ledger.get_loan(f"{approved_loan.id}/status")
        with pytest.raises(EmployeeNotFoundException):
            await ledger.get_employee(f"{employee_id}/salary")

    @pytest.mark.asyncio
    async def test_list_keeps_creation_order(self, ledger: LoanLedgerService, employee_id, hr_officer):
        created = []
        for n in range(8):
            loan = await ledger.request_loan(employee_id, 1_000 + n, "Rent", 1, hr_officer)
            created.append(loan.id)

        assert [loan.id for loan in await ledger.list_loans()] == created

    @pytest.mark.asyncio
    async def test_list_filters(
        self, ledger: LoanLedgerService, approved_loan: Loan, employee_id, other_employee_id, hr_officer
    ):
        pending = await ledger.request_loan(employee_id, 20_000, "Rent", 4, hr_officer)
        other = await ledger.request_loan(other_employee_id, 20_000, "Rent", 4, hr_officer)

        mine = await ledger.list_loans(employee_id=employee_id)
        assert {loan.id for loan in mine} == {approved_loan.id, pending.id}

        approved = await ledger.list_loans(status=LoanStatus.APPROVED)
        assert [loan.id for loan in approved] == [approved_loan.id]

        assert {loan.id for loan in await ledger.list_loans()} == {approved_loan.id, pending.id, other.id}

    @pytest.mark.asyncio
    async def test_summary(
        self,
        ledger: LoanLedgerService,
        reconciler: BalanceReconcilerService,
        approved_loan: Loan,
        employee_id,
        hr_officer,
        manager,
    ):
        await ledger.request_loan(employee_id, 20_000, "Rent", 4, hr_officer)
        rejected = await ledger.request_loan(employee_id, 30_000, "Rent", 4, hr_officer)
        await ledger.reject_loan(rejected.id, manager, "No")
        await reconciler.record_payroll_credit(approved_loan.id, "2025-01", 10_000, "PAY-2025-01")

        summary = await ledger.get_loan_summary(employee_id=employee_id)

        assert summary.total_loans == 3
        assert summary.pending_loans == 1
        assert summary.approved_loans == 1
        assert summary.rejected_loans == 1
        assert summary.repaid_loans == 0
        assert summary.total_approved_amount == 120_000
        assert summary.total_outstanding == 110_000
