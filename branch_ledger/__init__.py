"""
Branch Ledger

Staff-operated bank ledger with dual-control approval of high-value teller
actions, atomic balance application and a hash-chained audit trail.
"""

__version__ = "1.0.0"
