"""
HR Loan Ledger

Employee loan requests, approvals, EMI schedules and payroll reconciliation.
"""

__version__ = "0.1.0"
