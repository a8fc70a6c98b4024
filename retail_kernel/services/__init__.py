"""Services for the retail kernel (write side)."""

from retail_kernel.services.auditor_service import AuditorService, AuditSink
from retail_kernel.services.capability import (
    INVENTORY_ADJUST,
    AllowAllCapabilities,
    CapabilityChecker,
    DenyAllCapabilities,
    StaticCapabilities,
)
from retail_kernel.services.gl_posting import (
    GlPostingEngine,
    JournalHeader,
    JournalLineInput,
    ReversalResult,
)
from retail_kernel.services.idempotency_guard import (
    IdempotencyClaim,
    IdempotencyGuard,
    Replay,
    request_fingerprint,
)
from retail_kernel.services.inventory_ledger import (
    InventoryLedger,
    InventorySnapshot,
    MovementContext,
    MovementOutcome,
    MovementResult,
    TransferResult,
)
from retail_kernel.services.sequence_service import SequenceService

__all__ = [
    "AllowAllCapabilities",
    "AuditSink",
    "AuditorService",
    "CapabilityChecker",
    "DenyAllCapabilities",
    "GlPostingEngine",
    "INVENTORY_ADJUST",
    "IdempotencyClaim",
    "IdempotencyGuard",
    "InventoryLedger",
    "InventorySnapshot",
    "JournalHeader",
    "JournalLineInput",
    "MovementContext",
    "MovementOutcome",
    "MovementResult",
    "Replay",
    "ReversalResult",
    "SequenceService",
    "StaticCapabilities",
    "TransferResult",
    "request_fingerprint",
]
