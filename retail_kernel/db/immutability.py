"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

Posted journals, stock movements and audit events are facts.  They are
corrected by new rows (a reversing journal, a compensating movement), never
by editing or deleting old ones.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications made through SQLAlchemy
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/sql/*.sql (PostgreSQL triggers, see db/triggers.py)
    - Catches raw SQL, bulk statements and direct psql access

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | Rule
----------------|-----------------------------------------------------------
GlJournal       | Once POSTED/VOIDED/REVERSED: only POSTED -> REVERSED and
                | POSTED -> VOIDED status changes; never deleted
GlJournal       | Never flushed as POSTED while sum(debit) != sum(credit)
GlLine          | No INSERT/UPDATE/DELETE once the parent is not DRAFT
StockMovement   | ALWAYS immutable (append-only)
AuditEvent      | ALWAYS immutable (append-only)

updated_at / updated_by_id are audit metadata and may always change.

===============================================================================
USAGE
===============================================================================

    from retail_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from decimal import Decimal

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from retail_kernel.exceptions import GlValidationError, ImmutabilityViolationError
from retail_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})

_ALLOWED_FINAL_TRANSITIONS = frozenset(
    {("POSTED", "REVERSED"), ("POSTED", "VOIDED")}
)


def _status_value(status) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", status)


def _block(entity_type: str, entity_id, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# GlJournal
# =============================================================================


def _check_journal_immutability(mapper, connection, target):
    """
    Allow edits on DRAFT journals and the two sanctioned status transitions
    out of POSTED.  Everything else on a finalized journal is blocked.
    """
    status_history = get_history(target, "status")

    if status_history.deleted:
        old_status = _status_value(status_history.deleted[0])
    else:
        old_status = _status_value(target.status)

    if old_status == "DRAFT":
        return

    new_status = _status_value(target.status)
    if new_status != old_status and (old_status, new_status) not in _ALLOWED_FINAL_TRANSITIONS:
        _block(
            "GlJournal",
            target.id,
            "UPDATE",
            f"Cannot change status of a {old_status} journal to {new_status}",
            field="status",
        )

    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if attr.key in _AUDIT_METADATA_FIELDS or attr.key == "status":
            continue
        if insp.attrs[attr.key].history.has_changes():
            _block(
                "GlJournal",
                target.id,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on {old_status.lower()} journal",
                field=attr.key,
            )


def _check_journal_delete(mapper, connection, target):
    """Only DRAFT journals may be deleted."""
    if _status_value(target.status) != "DRAFT":
        _block(
            "GlJournal",
            target.id,
            "DELETE",
            f"{_status_value(target.status).capitalize()} journals cannot be deleted",
        )


def _check_posted_journal_balance(session, flush_context, instances):
    """
    Reject a flush that would persist a journal as POSTED while unbalanced.

    Runs in SessionEvents.before_flush so it sees the in-memory lines of
    every journal that is new or whose status is changing to POSTED.
    """
    from retail_kernel.models.journal import GlJournal

    candidates = [obj for obj in session.new if isinstance(obj, GlJournal)]
    candidates.extend(
        obj
        for obj in session.dirty
        if isinstance(obj, GlJournal) and get_history(obj, "status").added
    )

    for journal in candidates:
        if _status_value(journal.status) != "POSTED":
            continue
        with session.no_autoflush:
            debit = sum((line.debit or Decimal("0") for line in journal.lines), Decimal("0"))
            credit = sum((line.credit or Decimal("0") for line in journal.lines), Decimal("0"))
        if debit != credit or debit == 0:
            logger.error(
                "unbalanced_post_blocked",
                extra={
                    "journal_id": str(journal.id),
                    "total_debit": debit,
                    "total_credit": credit,
                },
            )
            raise GlValidationError(
                str(journal.id) if journal.id else None,
                [f"Journal debits ({debit}) must equal credits ({credit})"],
            )


# =============================================================================
# GlLine
# =============================================================================


def _parent_status(connection, target) -> str | None:
    """Status of the line's journal as currently stored in the database."""
    from retail_kernel.models.journal import GlJournal

    journal_id = target.journal_id
    if journal_id is None and target.journal is not None:
        journal_id = target.journal.id
    if journal_id is None:
        return None
    status = connection.execute(
        select(GlJournal.status).where(GlJournal.id == journal_id)
    ).scalar_one_or_none()
    return _status_value(status)


def _check_line_insert(mapper, connection, target):
    """No new lines on a journal that has left DRAFT."""
    status = _parent_status(connection, target)
    if status is None and target.journal is not None:
        status = _status_value(target.journal.status)
    if status not in (None, "DRAFT"):
        _block(
            "GlLine",
            target.id,
            "INSERT",
            f"Cannot add lines to a {status.lower()} journal",
        )


def _check_line_update(mapper, connection, target):
    status = _parent_status(connection, target)
    if status not in (None, "DRAFT"):
        _block(
            "GlLine",
            target.id,
            "UPDATE",
            f"Lines of a {status.lower()} journal cannot be modified",
        )


def _check_line_delete(mapper, connection, target):
    status = _parent_status(connection, target)
    if status not in (None, "DRAFT"):
        _block(
            "GlLine",
            target.id,
            "DELETE",
            f"Lines of a {status.lower()} journal cannot be deleted",
        )


# =============================================================================
# Append-only rows
# =============================================================================


def _append_only_update(entity_type: str):
    def _check(mapper, connection, target):
        _block(entity_type, target.id, "UPDATE", f"{entity_type} rows are append-only")

    _check.__name__ = f"_check_{entity_type.lower()}_update"
    return _check


def _append_only_delete(entity_type: str):
    def _check(mapper, connection, target):
        _block(entity_type, target.id, "DELETE", f"{entity_type} rows are append-only")

    _check.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check


_check_stock_movement_update = _append_only_update("StockMovement")
_check_stock_movement_delete = _append_only_delete("StockMovement")
_check_audit_event_update = _append_only_update("AuditEvent")
_check_audit_event_delete = _append_only_delete("AuditEvent")


# =============================================================================
# Registration
# =============================================================================


def _listener_table():
    from retail_kernel.models.audit_event import AuditEvent
    from retail_kernel.models.inventory import StockMovement
    from retail_kernel.models.journal import GlJournal, GlLine

    return [
        (Session, "before_flush", _check_posted_journal_balance),
        (GlJournal, "before_update", _check_journal_immutability),
        (GlJournal, "before_delete", _check_journal_delete),
        (GlLine, "before_insert", _check_line_insert),
        (GlLine, "before_update", _check_line_update),
        (GlLine, "before_delete", _check_line_delete),
        (StockMovement, "before_update", _check_stock_movement_update),
        (StockMovement, "before_delete", _check_stock_movement_delete),
        (AuditEvent, "before_update", _check_audit_event_update),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are not added twice.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must write forbidden rows to prove
    the database-level triggers catch them.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
