"""
Module: retail_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only; no UPDATE or DELETE (ORM listener + PostgreSQL trigger).
    - seq is unique and allocated from a locked SequenceCounter row.
    - hash = H(seq | event_name | subject_type | subject_id | payload_hash |
      prev_hash); validated by AuditorService.validate_chain.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a mismatch.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from retail_kernel.db.base import Base, UUIDString


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    event_name is dotted (``pos.receipt.created``,
    ``telebirr.transaction.idempotent``, ``journal.posted`` ...).
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_subject", "subject_type", "subject_id"),
        Index("idx_audit_event_name", "event_name"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    event_name: Mapped[str] = mapped_column(String(100), nullable=False)

    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # String, not UUID: failure events may only know the idempotency key
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    before: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    after: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Masked request context (keys like password/token/email replaced)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Null only for the genesis event
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.event_name} {self.subject_type}:{self.subject_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
