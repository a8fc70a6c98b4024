"""
Module: retail_kernel.models.journal
Responsibility: ORM persistence for GL journals and their lines -- the single
    source of financial truth.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/ or outer layers.

Invariants enforced:
    - journal_no is unique.
    - (journal_id, line_no) is unique.
    - A line has debit >= 0, credit >= 0 and exactly one of them > 0 (CHECK).
    - POSTED journals balance (sum debit == sum credit).  Enforced by
      GlPostingEngine.post, by the before_flush listener in
      db/immutability.py and, on PostgreSQL, by a constraint trigger.
    - Lines of a non-DRAFT journal are never inserted, updated or deleted
      (ORM listeners + PostgreSQL triggers).

Failure modes:
    - IntegrityError on duplicate journal_no or line_no, or a one-sided
      CHECK violation.
    - ImmutabilityViolationError when a finalized journal or its lines are
      modified.

Audit relevance:
    Corrections never edit a posted journal: a reversing journal is created
    (reversal_of_id points back at the original) and the original only moves
    to REVERSED or VOIDED.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retail_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from retail_kernel.models.account import GlAccount


class JournalStatus(str, Enum):
    """Lifecycle status of a journal.

    DRAFT -> POSTED -> REVERSED | VOIDED, and DRAFT -> VOIDED.
    POSTED, VOIDED and REVERSED are terminal for line edits.
    """

    DRAFT = "DRAFT"
    POSTED = "POSTED"
    VOIDED = "VOIDED"
    REVERSED = "REVERSED"


FINAL_JOURNAL_STATUSES = frozenset(
    {JournalStatus.POSTED, JournalStatus.VOIDED, JournalStatus.REVERSED}
)


class GlJournal(TrackedBase):
    """
    Journal header -- the unit of double-entry accounting.

    Contract:
        Created DRAFT; lines are appended only while DRAFT.  Once POSTED the
        header accepts exactly two changes: status -> REVERSED or
        status -> VOIDED.
    """

    __tablename__ = "gl_journals"
    __table_args__ = (
        Index("idx_gl_journal_status", "status"),
        Index("idx_gl_journal_date", "journal_date"),
        Index("idx_gl_journal_source_ref", "source", "reference"),
    )

    journal_no: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    journal_date: Mapped[date] = mapped_column(Date, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    fx_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))

    # Originating workflow (POS, TELEBIRR, MANUAL, ...)
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    memo: Mapped[str | None] = mapped_column(Text, nullable=True)

    branch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=True,
    )

    status: Mapped[JournalStatus] = mapped_column(
        String(10),
        default=JournalStatus.DRAFT,
        nullable=False,
    )

    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    posted_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Set on a reversing journal; points at the journal it reverses
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("gl_journals.id"),
        nullable=True,
    )

    lines: Mapped[list["GlLine"]] = relationship(
        back_populates="journal",
        cascade="all, delete-orphan",
        order_by="GlLine.line_no",
        lazy="selectin",
    )

    reversal_of: Mapped["GlJournal | None"] = relationship(
        remote_side="GlJournal.id",
        foreign_keys=[reversal_of_id],
    )

    def __repr__(self) -> str:
        return f"<GlJournal {self.journal_no} status={self.status}>"

    @property
    def is_draft(self) -> bool:
        return self.status == JournalStatus.DRAFT

    @property
    def is_posted(self) -> bool:
        return self.status == JournalStatus.POSTED

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), Decimal("0"))

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), Decimal("0"))

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit


class GlLine(TrackedBase):
    """
    One debit or credit line of a journal.

    Guarantees:
        - Exactly one of debit/credit is > 0, the other is 0.
        - dimensions carries subledger tags (branch, cost_center, project,
          customer, Agent, ...) for per-entity rollups.
    """

    __tablename__ = "gl_lines"
    __table_args__ = (
        UniqueConstraint("journal_id", "line_no", name="uq_gl_line_journal_line_no"),
        CheckConstraint("debit >= 0", name="ck_gl_line_debit_non_negative"),
        CheckConstraint("credit >= 0", name="ck_gl_line_credit_non_negative"),
        CheckConstraint(
            "(debit > 0 AND credit = 0) OR (credit > 0 AND debit = 0)",
            name="ck_gl_line_one_sided",
        ),
        Index("idx_gl_line_account", "account_id"),
    )

    journal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("gl_journals.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("gl_accounts.id"),
        nullable=False,
    )

    debit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    credit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    dimensions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    journal: Mapped["GlJournal"] = relationship(back_populates="lines")

    account: Mapped["GlAccount"] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<GlLine {self.line_no} Dr={self.debit} Cr={self.credit}>"
