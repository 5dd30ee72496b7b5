"""
Lending Core

Loan lifecycle and repayment engine for microfinance back offices: increment
level policy, installment schedules, payment distribution, and overdue risk
classification. All financial math uses Decimal.
"""

__version__ = "1.0.0"
