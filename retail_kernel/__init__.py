"""
Retail Ledger Kernel

Correctness core of a retail operations backend:
- Inventory ledger (on-hand / reserved state machine with signed movements)
- Double-entry general ledger with immutable posted journals
- Idempotency guard for side-effecting requests
- Hash-chained audit trail
"""

__version__ = "0.1.0"
