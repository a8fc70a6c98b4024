"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Strictly increasing numbers for the audit chain and for daily journal
    numbers.  Uses the ``sequence_counters`` table with row-level locking
    (``SELECT ... FOR UPDATE``) so concurrent allocations serialize.

Architecture position:
    Kernel > Services.  Called by AuditorService and GlPostingEngine.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  Aggregate max()+1 is never used.
    - Transactional: the increment becomes visible when the caller commits;
      a rollback returns the value.

Failure modes:
    - IntegrityError on a concurrent first-use insert of the same counter,
      handled by savepoint rollback and retry under lock.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retail_kernel.logging_config import get_logger
from retail_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Usage:
        seq = SequenceService(session).next_value("audit_event")
    """

    AUDIT_EVENT = "audit_event"
    JOURNAL_NO_PREFIX = "journal_no"

    def __init__(self, session: Session):
        self._session = session

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the named counter (creating it on first use), increment it and
        return the new value.

        Postconditions:
            - Returns an integer > 0, strictly greater than any value
              previously committed for this name.
            - The counter row stays locked until the caller's transaction
              ends.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            # Another transaction may create the row concurrently; the
            # savepoint keeps the caller's work intact if we lose.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None
