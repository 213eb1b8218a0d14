"""
Loan Servicing Engine

Payment-schedule generation and servicing for short-term consumer loans:
amortization with Decimal money math, business-day aware due dates, fee
integration, schedule reconciliation against settled history, and
hash-chained audit trails for every lifecycle change.
"""

__version__ = "1.0.0"
