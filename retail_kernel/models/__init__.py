"""Domain models for the retail kernel."""

from retail_kernel.models.account import (
    NORMAL_BALANCE_BY_TYPE,
    AccountStatus,
    AccountType,
    GlAccount,
    NormalBalance,
    normal_balance_for,
)
from retail_kernel.models.audit_event import AuditEvent
from retail_kernel.models.catalog import Branch, Product
from retail_kernel.models.idempotency import IdempotencyKey, IdempotencyStatus
from retail_kernel.models.inventory import InventoryItem, MovementType, StockMovement
from retail_kernel.models.journal import (
    FINAL_JOURNAL_STATUSES,
    GlJournal,
    GlLine,
    JournalStatus,
)
from retail_kernel.models.sequence import SequenceCounter

__all__ = [
    "AccountStatus",
    "AccountType",
    "AuditEvent",
    "Branch",
    "FINAL_JOURNAL_STATUSES",
    "GlAccount",
    "GlJournal",
    "GlLine",
    "IdempotencyKey",
    "IdempotencyStatus",
    "InventoryItem",
    "JournalStatus",
    "MovementType",
    "NORMAL_BALANCE_BY_TYPE",
    "NormalBalance",
    "Product",
    "SequenceCounter",
    "StockMovement",
    "normal_balance_for",
]
