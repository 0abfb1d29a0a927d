"""
Retail Ledger

Retail-banking ledger core: accounts, an append-only transaction history,
transfers, loan origination and repayment, savings plans and the monthly
interest job, with Decimal money math and atomic units of work.
"""

__version__ = "1.0.0"
