"""
HR Loan Ledger - FastAPI Dependencies

Shared dependencies for the calling actor, the document store and the ledger
services.

The actor is asserted by the upstream gateway through headers:
    X-Actor-Id, X-Actor-Name, X-Actor-Role, X-Actor-Employee-Id (optional)
"""

from typing import Optional

from fastapi import Depends, Header

from hrloans.database import async_session_maker
from hrloans.schemas.loan import Actor
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.document_store import DocumentStore
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.services.payroll_port import PayrollIntegrationPort
from hrloans.utils.error_handling import AuthenticationException
from hrloans.utils.permissions import ActorRole, LoanPermission, has_permission


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_employee_id: Optional[str] = Header(None),
) -> Actor:
    """
    Build the Actor for this request.

    Raises:
        AuthenticationException: identity headers missing or role unknown
    """
    if not x_actor_id or not x_actor_role:
        raise AuthenticationException(message="Actor identity headers are required")
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise AuthenticationException(message=f"Unknown actor role: {x_actor_role}") from None

    return Actor(
        id=x_actor_id,
        name=x_actor_name or "",
        role=role,
        employee_id=x_actor_employee_id or None,
    )


def get_document_store() -> DocumentStore:
    return DocumentStore(async_session_maker)


def get_loan_ledger(store: DocumentStore = Depends(get_document_store)) -> LoanLedgerService:
    return LoanLedgerService(store)


def get_balance_reconciler(store: DocumentStore = Depends(get_document_store)) -> BalanceReconcilerService:
    return BalanceReconcilerService(store)


def get_payroll_port(
    ledger: LoanLedgerService = Depends(get_loan_ledger),
    reconciler: BalanceReconcilerService = Depends(get_balance_reconciler),
) -> PayrollIntegrationPort:
    return PayrollIntegrationPort(ledger, reconciler)


def can_view_all_loans(actor: Actor) -> bool:
    return has_permission(actor.role, LoanPermission.VIEW_ALL_LOANS)
