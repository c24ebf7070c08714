"""
HR Loan Ledger - Services Package

Business logic services.
"""

from hrloans.services.document_store import DocumentStore
from hrloans.services.approval_workflow import ApprovalWorkflowService
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.payroll_port import PayrollIntegrationPort
