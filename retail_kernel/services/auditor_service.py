"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Appends immutable, hash-chained ``AuditEvent`` rows for every meaningful
    state change (receipt posted/voided, Telebirr transaction posted/voided,
    idempotent replays, failures).  Provides chain validation for tamper
    detection and per-subject trace queries.

Architecture position:
    Kernel > Services.  ``AuditorService`` writes inside the caller's
    session; ``AuditSink`` is the collaborator injected into orchestrators
    and adds ``record_isolated`` for events that must survive a rollback.

Invariants enforced:
    - seq comes from SequenceService (locked counter row).  Holding that
      lock while reading the previous hash serializes chain appends.
    - hash = H(seq | event_name | subject_type | subject_id | payload_hash |
      prev_hash).
    - Append-only (ORM listener + PostgreSQL trigger on AuditEvent).
    - Sensitive context keys are masked before hashing and storage.

Failure modes:
    - ``record``: any storage error propagates and aborts the parent
      transaction (success events are part of the business unit of work).
    - ``record_isolated``: storage errors are logged at ERROR and not
      raised, so the caller re-raises the original business exception.
    - ``validate_chain``: AuditChainBrokenError on mismatch.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from retail_kernel.db.engine import session_scope
from retail_kernel.domain.clock import Clock, SystemClock
from retail_kernel.exceptions import AuditChainBrokenError
from retail_kernel.logging_config import get_logger
from retail_kernel.models.audit_event import AuditEvent
from retail_kernel.services.sequence_service import SequenceService
from retail_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_confirmation",
        "token",
        "access_token",
        "refresh_token",
        "secret",
        "ssn",
        "email",
        "phone",
        "api_key",
        "private_key",
    }
)

MASK = "***"


def mask_sensitive(data: Any) -> Any:
    """Recursively replace values of sensitive keys with ``***``."""
    if isinstance(data, dict):
        return {
            key: MASK if str(key).lower() in SENSITIVE_KEYS else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [mask_sensitive(item) for item in data]
    return data


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    event_name: str
    occurred_at: datetime
    actor_id: UUID | None
    before: dict | None
    after: dict | None
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one subject in chain order."""

    subject_type: str
    subject_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def event_names(self) -> tuple[str, ...]:
        return tuple(entry.event_name for entry in self.entries)


class AuditorService:
    """
    Creates and validates hash-chained audit events.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        event_name: str,
        subject_type: str,
        subject_id: Any = None,
        before: dict | None = None,
        after: dict | None = None,
        context: dict | None = None,
        actor_id: UUID | None = None,
    ) -> AuditEvent:
        """
        Append one audit event to the chain within the current transaction.

        Postconditions:
            - A new AuditEvent is flushed with the next seq and a hash
              linked to its predecessor.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        before_data = to_json_safe(before) if before is not None else None
        after_data = to_json_safe(after) if after is not None else None
        context_data = to_json_safe(mask_sensitive(context)) if context is not None else None
        subject_ref = str(subject_id) if subject_id is not None else None

        payload_hash = hash_payload(
            {"before": before_data, "after": after_data, "context": context_data}
        )
        event_hash = hash_audit_event(
            seq=seq,
            event_name=event_name,
            subject_type=subject_type,
            subject_id=subject_ref or "",
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            event_name=event_name,
            subject_type=subject_type,
            subject_id=subject_ref,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            before=before_data,
            after=after_data,
            context=context_data,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "event_name": event_name,
                "subject_type": subject_type,
                "subject_id": subject_ref,
                "seq": seq,
            },
        )
        return audit_event

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If any stored hash or prev_hash link does
                not match the recomputed value.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        previous: AuditEvent | None = None
        for event in events:
            expected_prev = previous.hash if previous is not None else None
            if event.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "reason": "prev_hash_mismatch"},
                )
                raise AuditChainBrokenError(
                    str(event.id), expected_prev or "None", event.prev_hash or "None"
                )

            expected_payload_hash = hash_payload(
                {"before": event.before, "after": event.after, "context": event.context}
            )
            expected_hash = hash_audit_event(
                seq=event.seq,
                event_name=event.event_name,
                subject_type=event.subject_type,
                subject_id=event.subject_id or "",
                payload_hash=expected_payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash or event.payload_hash != expected_payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "reason": "hash_mismatch"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)
            previous = event

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, subject_type: str, subject_id: Any) -> AuditTrace:
        """All events for one subject, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.subject_type == subject_type,
                AuditEvent.subject_id == str(subject_id),
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            subject_type=subject_type,
            subject_id=str(subject_id),
            entries=tuple(
                AuditTraceEntry(
                    seq=event.seq,
                    event_name=event.event_name,
                    occurred_at=event.occurred_at,
                    actor_id=event.actor_id,
                    before=event.before,
                    after=event.after,
                    hash=event.hash,
                )
                for event in events
            ),
        )


class AuditSink:
    """
    Audit collaborator injected into the transaction orchestrators.

    Contract:
        ``record`` appends inside the caller's session: it commits or rolls
        back with the business data.  ``record_isolated`` opens its own
        session and commits, so an event describing a rollback survives it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def record(
        self,
        session: Session,
        event_name: str,
        subject_type: str,
        subject_id: Any = None,
        before: dict | None = None,
        after: dict | None = None,
        context: dict | None = None,
        actor_id: UUID | None = None,
    ) -> AuditEvent:
        return AuditorService(session, self._clock).record(
            event_name,
            subject_type,
            subject_id,
            before=before,
            after=after,
            context=context,
            actor_id=actor_id,
        )

    def record_isolated(
        self,
        event_name: str,
        subject_type: str,
        subject_id: Any = None,
        before: dict | None = None,
        after: dict | None = None,
        context: dict | None = None,
        actor_id: UUID | None = None,
    ) -> bool:
        """
        Append one event in its own transaction.

        Returns True if the event was committed.  A storage failure is
        logged with exc_info and reported as False.
        """
        try:
            with session_scope(self._session_factory) as session:
                AuditorService(session, self._clock).record(
                    event_name,
                    subject_type,
                    subject_id,
                    before=before,
                    after=after,
                    context=context,
                    actor_id=actor_id,
                )
            return True
        except Exception:
            logger.error(
                "audit_isolated_write_failed",
                extra={
                    "event_name": event_name,
                    "subject_type": subject_type,
                    "subject_id": str(subject_id) if subject_id is not None else None,
                },
                exc_info=True,
            )
            return False
