"""
Module: retail_kernel.models.inventory
Responsibility: ORM persistence for per (product, branch) stock state and the
    append-only movement log that explains every change to it.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/ or outer layers.

Invariants enforced (CHECK constraints, mirrored by the engine):
    - on_hand >= 0
    - reserved >= 0 and reserved <= on_hand
    - StockMovement.qty <> 0
    - (product_id, branch_id) unique on inventory_items

Failure modes:
    - IntegrityError on a CHECK violation (only reachable by bypassing
      InventoryLedger, which validates first).
    - IntegrityError on a concurrent lazy insert of the same item
      (InventoryLedger retries inside a savepoint).
    - ImmutabilityViolationError on UPDATE/DELETE of a StockMovement.

Audit relevance:
    StockMovement rows are the inventory audit trail and the lookup table for
    ref-based replay detection: a repeated (ref, product, branch, type) means
    the operation was already applied.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from retail_kernel.db.base import TrackedBase, UUIDString


class MovementType(str, Enum):
    """Kinds of stock movement.

    Sign convention of StockMovement.qty:
        OPENING, RECEIVE, RESERVE, UNRESERVE, TRANSFER_IN -> positive
        ISSUE, TRANSFER_OUT -> negative
        ADJUST -> signed delta as requested
    """

    OPENING = "OPENING"
    RECEIVE = "RECEIVE"
    ISSUE = "ISSUE"
    RESERVE = "RESERVE"
    UNRESERVE = "UNRESERVE"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUST = "ADJUST"


class InventoryItem(TrackedBase):
    """
    Stock state for one product at one branch.

    Contract:
        Created lazily by the first movement touching the pair; mutated only
        by InventoryLedger while holding the row lock; never deleted.
    """

    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("product_id", "branch_id", name="uq_inventory_item_product_branch"),
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_le_on_hand"),
        Index("idx_inventory_item_branch", "branch_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=False,
    )

    on_hand: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    reserved: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    @property
    def available(self) -> Decimal:
        """Quantity free to reserve or issue."""
        return self.on_hand - self.reserved

    def __repr__(self) -> str:
        return (
            f"<InventoryItem {self.product_id}@{self.branch_id} "
            f"on_hand={self.on_hand} reserved={self.reserved}>"
        )


class StockMovement(TrackedBase):
    """
    Append-only, signed quantity change.

    One row per logical event; never updated or deleted.
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("qty <> 0", name="ck_stock_movement_qty_non_zero"),
        Index("idx_stock_movement_ref", "ref", "product_id", "branch_id", "type"),
        Index("idx_stock_movement_item", "product_id", "branch_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=False,
    )

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    type: Mapped[MovementType] = mapped_column(String(20), nullable=False)

    ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Named movement_meta: "metadata" is reserved on declarative classes
    movement_meta: Mapped[dict | None] = mapped_column("meta", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<StockMovement {self.type} {self.qty} ref={self.ref}>"
