"""
Ledger & Amortization Engine

Account balance mutation with account-type-aware sign conventions, loan
amortization over a floating rate history, and credit card statement math
with an advance-balance sub-ledger. All money is Decimal.
"""

__version__ = "1.0.0"
