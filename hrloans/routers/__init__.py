"""
HR Loan Ledger - Routers Package

FastAPI route handlers.

Routers:
- loans: Loans, skip-EMI requests, overrides, approvals queue and payroll integration
"""
