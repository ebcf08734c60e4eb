"""
Bingo Vintage Loan Ledger

Loan lifecycle and ledger engine for cash and motorcycle hire-purchase
loans: schedule building, oldest-first payment application, delinquency
evaluation and a hash-chained, justification-bearing audit trail.
"""

__version__ = "1.0.0"
