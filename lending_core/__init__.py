"""
Lending Core

Loan amortization, payment-schedule generation and payment reconciliation
engine for a microfinance back office. All money is handled as Decimal and
every state change lands in a hash-chained audit trail.
"""

__version__ = "1.0.0"
