"""
Typed Exception Hierarchy for the Retail Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the HTTP layer, background jobs, the CLI) must map failures to
precise responses without parsing message strings.  Every error therefore:

  1. Has a TYPED exception class (catch by type, not message).
  2. Has a CODE class attribute (machine-readable, API-safe).
  3. Has an HTTP_STATUS class attribute (422 business rule, 404 not found,
     409 conflict) so the API layer translates without a lookup table.
  4. Carries structured DATA as attributes (quantities, ids, error lists).

Example:
    try:
        ledger.reserve(product_id, branch_id, Decimal("20"), ctx=ctx)
    except InsufficientStockError as e:
        api_response(
            status=e.http_status,
            code=e.code,
            requested=e.requested,
            available=e.available,
        )

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    RetailKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidQuantityError
    |   +-- InvalidStatusTransitionError
    |
    +-- InventoryError
    |   +-- InsufficientStockError
    |   +-- InsufficientReservedError
    |   +-- SameBranchTransferError
    |   +-- NegativeStockAdjustmentError
    |   +-- CapabilityDeniedError
    |
    +-- GlError
    |   +-- GlValidationError
    |   +-- JournalNotFoundError
    |   +-- JournalNotDraftError
    |   +-- JournalNotPostedError
    |   +-- JournalAlreadyFinalError
    |   +-- AccountNotFoundError
    |
    +-- IdempotencyError
    |   +-- IdempotencyInFlightError
    |   +-- IdempotencyConflictError
    |   +-- IdempotencyClaimLostError
    |
    +-- EntityNotFoundError
    +-- EntityInactiveError
    +-- AuditChainBrokenError
    +-- ImmutabilityViolationError
    +-- PostingRuleConfigError

Storage errors (sqlalchemy.exc.*) are never wrapped: they propagate as-is
and are logged by the orchestrators before being re-raised.
"""

from decimal import Decimal


class RetailKernelError(Exception):
    """
    Base exception for all retail kernel errors.

    All subclasses define `code` and `http_status` class attributes.
    """

    code: str = "RETAIL_KERNEL_ERROR"
    http_status: int = 422


# Validation


class ValidationError(RetailKernelError):
    """Request payload failed validation before any mutation began."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidQuantityError(ValidationError):
    """Quantity is outside the range an operation accepts."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, operation: str, quantity: Decimal, requirement: str):
        self.operation = operation
        self.quantity = quantity
        self.requirement = requirement
        super().__init__(
            f"Quantity for {operation} must be {requirement}, got {quantity}",
            field="qty",
        )


class InvalidStatusTransitionError(ValidationError):
    """A domain record cannot move from its current status to the target."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity_type: str, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition {entity_type} from {from_status} to {to_status}",
            field="status",
        )


# Inventory


class InventoryError(RetailKernelError):
    """Base exception for inventory ledger errors."""

    code: str = "INVENTORY_ERROR"


class InsufficientStockError(InventoryError):
    """Available quantity (on_hand - reserved) is below the request."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        operation: str,
        product_id: str,
        branch_id: str,
        requested: Decimal,
        available: Decimal,
    ):
        self.operation = operation
        self.product_id = product_id
        self.branch_id = branch_id
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough available stock to {operation}")


class InsufficientReservedError(InventoryError):
    """Reserved quantity is below the unreserve request."""

    code: str = "INSUFFICIENT_RESERVED"

    def __init__(
        self,
        product_id: str,
        branch_id: str,
        requested: Decimal,
        reserved: Decimal,
    ):
        self.product_id = product_id
        self.branch_id = branch_id
        self.requested = requested
        self.reserved = reserved
        super().__init__("Not enough reserved stock to unreserve")


class SameBranchTransferError(InventoryError):
    """Source and destination branch of a transfer are the same."""

    code: str = "SAME_BRANCH_TRANSFER"

    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__("Cannot transfer stock to the same branch")


class NegativeStockAdjustmentError(InventoryError):
    """Adjustment would drive on_hand below zero (or below reserved)."""

    code: str = "NEGATIVE_STOCK_ADJUSTMENT"

    def __init__(
        self,
        product_id: str,
        branch_id: str,
        delta: Decimal,
        on_hand: Decimal,
        reserved: Decimal,
    ):
        self.product_id = product_id
        self.branch_id = branch_id
        self.delta = delta
        self.on_hand = on_hand
        self.reserved = reserved
        super().__init__(
            f"Adjustment of {delta} would leave on-hand {on_hand + delta} "
            f"below reserved {reserved}"
            if on_hand + delta >= 0
            else "Adjustment would result in negative stock"
        )


class CapabilityDeniedError(InventoryError):
    """The capability gate refused the actor."""

    code: str = "CAPABILITY_DENIED"
    http_status: int = 403

    def __init__(self, actor_id: str | None, capability: str, branch_id: str | None):
        self.actor_id = actor_id
        self.capability = capability
        self.branch_id = branch_id
        super().__init__(f"Actor lacks capability '{capability}'")


# General ledger


class GlError(RetailKernelError):
    """Base exception for general-ledger errors."""

    code: str = "GL_ERROR"


class GlValidationError(GlError):
    """Draft journal failed validation; the journal stays DRAFT."""

    code: str = "GL_VALIDATION_FAILED"

    def __init__(self, journal_id: str | None, errors: list[str]):
        self.journal_id = journal_id
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Journal validation failed")


class JournalNotFoundError(GlError):
    """Journal with the given id does not exist."""

    code: str = "JOURNAL_NOT_FOUND"
    http_status: int = 404

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"Journal not found: {journal_id}")


class JournalNotDraftError(GlError):
    """Operation requires a DRAFT journal."""

    code: str = "JOURNAL_NOT_DRAFT"

    def __init__(self, journal_id: str, status: str, operation: str):
        status = getattr(status, "value", status)
        self.journal_id = journal_id
        self.status = status
        self.operation = operation
        super().__init__(f"Only draft journals can be {operation} (status: {status})")


class JournalNotPostedError(GlError):
    """Operation requires a POSTED journal."""

    code: str = "JOURNAL_NOT_POSTED"

    def __init__(self, journal_id: str, status: str):
        status = getattr(status, "value", status)
        self.journal_id = journal_id
        self.status = status
        super().__init__(f"Only posted journals can be reversed (status: {status})")


class JournalAlreadyFinalError(GlError):
    """Journal is already VOIDED or REVERSED."""

    code: str = "JOURNAL_ALREADY_FINAL"
    http_status: int = 409

    def __init__(self, journal_id: str, status: str):
        status = getattr(status, "value", status)
        self.journal_id = journal_id
        self.status = status
        super().__init__(f"Journal is already {status.lower()}")


class AccountNotFoundError(GlError):
    """GL account referenced by code or id does not exist."""

    code: str = "ACCOUNT_NOT_FOUND"
    http_status: int = 404

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"GL account not found: {account_ref}")


# Idempotency


class IdempotencyError(RetailKernelError):
    """Base exception for idempotency guard outcomes that are not replays."""

    code: str = "IDEMPOTENCY_ERROR"
    http_status: int = 409


class IdempotencyInFlightError(IdempotencyError):
    """Another request holding the same key is still running."""

    code: str = "IDEMPOTENCY_IN_FLIGHT"

    def __init__(self, scope: str, key: str, locked_until=None):
        self.scope = scope
        self.key = key
        self.locked_until = locked_until
        super().__init__(
            f"Request with idempotency key '{key}' is already in progress"
        )


class IdempotencyConflictError(IdempotencyError):
    """Same key reused with a different request payload."""

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(self, scope: str, key: str):
        self.scope = scope
        self.key = key
        super().__init__(
            f"Idempotency key '{key}' was already used with a different request"
        )


class IdempotencyClaimLostError(IdempotencyError):
    """The claim expired and the key now belongs to another holder."""

    code: str = "IDEMPOTENCY_CLAIM_LOST"

    def __init__(self, scope: str, key: str):
        self.scope = scope
        self.key = key
        super().__init__(
            f"Claim on idempotency key '{key}' expired and was taken over"
        )


# Entities


class EntityNotFoundError(RetailKernelError):
    """Referenced domain entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"
    http_status: int = 404

    def __init__(self, entity_type: str, entity_ref: str):
        self.entity_type = entity_type
        self.entity_ref = entity_ref
        super().__init__(f"{entity_type} not found: {entity_ref}")


class EntityInactiveError(RetailKernelError):
    """Referenced domain entity exists but may not be used."""

    code: str = "ENTITY_INACTIVE"

    def __init__(self, entity_type: str, entity_ref: str):
        self.entity_type = entity_type
        self.entity_ref = entity_ref
        super().__init__(f"{entity_type} is not active: {entity_ref}")


# Audit / immutability / configuration


class AuditChainBrokenError(RetailKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"
    http_status: int = 500

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


class ImmutabilityViolationError(RetailKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"
    http_status: int = 409

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class PostingRuleConfigError(RetailKernelError):
    """Posting-rule table references accounts that cannot be posted to."""

    code: str = "POSTING_RULE_CONFIG_INVALID"
    http_status: int = 500

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid posting rules: " + "; ".join(self.errors))
