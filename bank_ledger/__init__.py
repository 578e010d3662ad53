"""
Bank Back-Office Ledger

Account balances, transfers, loan approval with EMI schedules and
disbursement, and EMI settlement, all executed as locked units of work
with Decimal precision and an append-only transaction log.
"""

__version__ = "1.0.0"
