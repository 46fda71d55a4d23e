"""
Pawn Ledger

Pawn-loan lifecycle and till reconciliation engine: loan state machine,
per-shift cash balancing, due-date sweep and read-only reports, with
Decimal money and a hash-chained audit trail.
"""

__version__ = "1.0.0"
