"""
Module: retail_services.pos.orm
Responsibility: SQLAlchemy ORM persistence for POS receipts and their lines.

Architecture position: Services > POS > ORM.  Inherits from TrackedBase
    (retail_kernel.db.base).  References kernel tables (products, branches,
    gl_journals) by foreign key.

Invariants enforced:
    - All money and quantity fields are Decimal (Numeric(38,9)).
    - number and idempotency_key are unique.
    - Status changes go through PosReceiptService and the transition table
      in ``retail_services.pos.models``.

Audit relevance:
    A posted receipt links to its GL journal (gl_journal_id) and each line
    to its stock movement (stock_movement_ref), so a sale can be traced to
    both ledgers.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retail_kernel.db.base import TrackedBase


class ReceiptStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    VOIDED = "voided"
    REFUNDED = "refunded"


class Receipt(TrackedBase):
    """A POS sale.  Created posted by PosReceiptService.process_receipt."""

    __tablename__ = "receipts"

    __table_args__ = (
        Index("idx_receipt_branch", "branch_id"),
        Index("idx_receipt_status", "status"),
    )

    number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    branch_id: Mapped[UUID] = mapped_column(ForeignKey("branches.id"), nullable=False)

    status: Mapped[ReceiptStatus] = mapped_column(
        String(20), nullable=False, default=ReceiptStatus.DRAFT
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_total: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    discount_total: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    grand_total: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    paid_total: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)

    receipt_meta: Mapped[dict | None] = mapped_column("meta", JSON, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    gl_journal_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("gl_journals.id"), nullable=True
    )

    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[UUID | None] = mapped_column(nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[UUID | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list["ReceiptLine"]] = relationship(
        back_populates="receipt",
        lazy="selectin",
        order_by="ReceiptLine.line_no",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Receipt {self.number} [{self.status}]>"


class ReceiptLine(TrackedBase):
    """One product line of a receipt."""

    __tablename__ = "receipt_lines"

    __table_args__ = (
        UniqueConstraint("receipt_id", "line_no", name="uq_receipt_line_no"),
    )

    receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    product_id: Mapped[UUID] = mapped_column(ForeignKey("products.id"), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    stock_movement_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    receipt: Mapped["Receipt"] = relationship(back_populates="lines")
