"""
HR Loan Ledger - Permissions System

Role-based capabilities for loan ledger actors.

Permission Matrix:
==================

| Permission                    | Admin | Manager | HR | Payroll | Employee |
|-------------------------------|-------|---------|----|---------|----------|
| request_loan                  | X     | X       | X  |         | X (self) |
| edit_loan                     | X     | X       | X  |         | X (own)  |
| approve_loan                  | X     | X       |    |         |          |
| approve_skip_emi              | X     | X       |    |         |          |
| approve_loan_override         | X     |         |    |         |          |
| request_skip_emi              | X     | X       | X  |         | X (self) |
| record_payroll_credit         | X     |         |    | X       |          |
| view_all_loans                | X     | X       | X  | X       |          |
"""

from enum import Enum
from typing import Set


# ===========================================
# ROLES & PERMISSIONS
# ===========================================

class ActorRole(str, Enum):
    """Roles an acting user can hold."""
    ADMIN = "admin"
    MANAGER = "manager"
    HR = "hr"
    PAYROLL = "payroll"
    EMPLOYEE = "employee"


class LoanPermission(str, Enum):
    """Capabilities checked by the loan ledger."""
    REQUEST_LOAN = "request_loan"
    EDIT_LOAN = "edit_loan"
    APPROVE_LOAN = "approve_loan"
    APPROVE_SKIP_EMI = "approve_skip_emi"
    APPROVE_LOAN_OVERRIDE = "approve_loan_override"
    REQUEST_SKIP_EMI = "request_skip_emi"
    RECORD_PAYROLL_CREDIT = "record_payroll_credit"
    VIEW_ALL_LOANS = "view_all_loans"


# ===========================================
# PERMISSION MAPPINGS
# ===========================================

ROLE_PERMISSIONS: dict[ActorRole, Set[LoanPermission]] = {
    ActorRole.ADMIN: set(LoanPermission),
    ActorRole.MANAGER: {
        LoanPermission.REQUEST_LOAN,
        LoanPermission.EDIT_LOAN,
        LoanPermission.APPROVE_LOAN,
        LoanPermission.APPROVE_SKIP_EMI,
        LoanPermission.REQUEST_SKIP_EMI,
        LoanPermission.VIEW_ALL_LOANS,
    },
    ActorRole.HR: {
        LoanPermission.REQUEST_LOAN,
        LoanPermission.EDIT_LOAN,
        LoanPermission.REQUEST_SKIP_EMI,
        LoanPermission.VIEW_ALL_LOANS,
    },
    ActorRole.PAYROLL: {
        LoanPermission.RECORD_PAYROLL_CREDIT,
        LoanPermission.VIEW_ALL_LOANS,
    },
    ActorRole.EMPLOYEE: {
        LoanPermission.REQUEST_LOAN,
        LoanPermission.EDIT_LOAN,
        LoanPermission.REQUEST_SKIP_EMI,
    },
}

# Roles limited to acting on their own employee record
SELF_SERVICE_ROLES: Set[ActorRole] = {ActorRole.EMPLOYEE}


def get_role_permissions(role: ActorRole) -> Set[LoanPermission]:
    """Get all permissions for a role."""
    return ROLE_PERMISSIONS.get(role, set())


def has_permission(role: ActorRole, permission: LoanPermission) -> bool:
    """Check if a role has a specific permission."""
    return permission in get_role_permissions(role)


def is_self_service(role: ActorRole) -> bool:
    """Check if a role may only act on its own employee record."""
    return role in SELF_SERVICE_ROLES
