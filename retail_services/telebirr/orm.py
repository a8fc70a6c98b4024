"""
Module: retail_services.telebirr.orm
Responsibility: SQLAlchemy ORM persistence for the Telebirr agent
    settlement subsystem: agents, the bank accounts that fund them, and
    posted transactions.

Architecture position: Services > Telebirr > ORM.  Inherits from
    TrackedBase (retail_kernel.db.base).

Invariants enforced:
    - agent short_code, bank external_number and transaction
      idempotency_key are unique.
    - amount is Decimal (Numeric(38,9)).
    - A transaction always references the GL journal that posted it.

Audit relevance:
    TelebirrTransaction is the operational record; the authoritative
    financial truth is the linked GL journal.  Agent balances are read
    from the GL subledger dimension, not from this table.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retail_kernel.db.base import TrackedBase
from retail_kernel.models.account import GlAccount


class AgentStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class TelebirrTxType(str, Enum):
    TOPUP = "TOPUP"
    ISSUE = "ISSUE"
    REPAY = "REPAY"
    LOAN = "LOAN"


class TelebirrTxStatus(str, Enum):
    POSTED = "Posted"
    VOIDED = "Voided"


class TelebirrAgent(TrackedBase):
    """A Telebirr sub-agent that receives e-float on credit."""

    __tablename__ = "telebirr_agents"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    short_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[AgentStatus] = mapped_column(
        String(20), nullable=False, default=AgentStatus.ACTIVE
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<TelebirrAgent {self.short_code} [{self.status}]>"


class BankAccount(TrackedBase):
    """A bank account backed by a GL account (resolves the BANK placeholder)."""

    __tablename__ = "bank_accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    external_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    gl_account_id: Mapped[UUID] = mapped_column(ForeignKey("gl_accounts.id"), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    gl_account: Mapped[GlAccount] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<BankAccount {self.external_number}>"


class TelebirrTransaction(TrackedBase):
    """One posted TOPUP / ISSUE / REPAY / LOAN."""

    __tablename__ = "telebirr_transactions"

    __table_args__ = (
        Index("idx_telebirr_tx_agent", "agent_id"),
        Index("idx_telebirr_tx_type_status", "tx_type", "status"),
    )

    tx_type: Mapped[TelebirrTxType] = mapped_column(String(10), nullable=False)

    agent_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("telebirr_agents.id"), nullable=True
    )

    bank_account_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("bank_accounts.id"), nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    gl_journal_id: Mapped[UUID] = mapped_column(ForeignKey("gl_journals.id"), nullable=False)

    status: Mapped[TelebirrTxStatus] = mapped_column(
        String(20), nullable=False, default=TelebirrTxStatus.POSTED
    )

    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[UUID | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    agent: Mapped["TelebirrAgent | None"] = relationship(lazy="selectin")
    bank_account: Mapped["BankAccount | None"] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<TelebirrTransaction {self.tx_type} {self.amount} [{self.status}]>"
