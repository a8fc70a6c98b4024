"""
Module: retail_kernel.db.triggers
Responsibility: Loading, installing, and verifying the PostgreSQL ledger
    triggers (Layer 2 of 2).  Database-level complement to the ORM listeners
    in db/immutability.py.
Architecture position: Kernel > DB.  MUST NOT import from models/,
    services/, selectors/ or outer layers.

Invariants enforced (PostgreSQL only; SQLite relies on the ORM layer):
    - Finalized GlJournal rows: only POSTED -> REVERSED / VOIDED; no DELETE.
    - GlJournal cannot become POSTED unless its lines balance.
    - GlLine rows: no INSERT/UPDATE/DELETE once the parent left DRAFT.
    - StockMovement and AuditEvent rows: append-only.

Failure modes:
    - RAISE EXCEPTION inside a trigger surfaces as InternalError /
      IntegrityError from SQLAlchemy.
    - FileNotFoundError if an SQL file is missing from the package.
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

SQL_DIR = Path(__file__).parent / "sql"

TRIGGER_FILES = [
    "01_gl_journal.sql",
    "02_gl_line.sql",
    "03_append_only.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_gl_journal_immutability_update",
    "trg_gl_journal_immutability_delete",
    "trg_gl_journal_balance_check",
    "trg_gl_line_no_insert_final",
    "trg_gl_line_immutability_update",
    "trg_gl_line_immutability_delete",
    "trg_stock_movement_append_only",
    "trg_audit_event_append_only",
]


def _load_sql_file(filename: str) -> str:
    return (SQL_DIR / filename).read_text(encoding="utf-8")


def _load_all_trigger_sql() -> str:
    """Concatenate the trigger files in numbered order."""
    sql_parts = []
    for filename in TRIGGER_FILES:
        sql_parts.append(f"-- Loading: {filename}")
        sql_parts.append(_load_sql_file(filename))
        sql_parts.append("")
    return "\n".join(sql_parts)


def install_ledger_triggers(engine: Engine) -> None:
    """
    Install the ledger triggers.

    Preconditions: tables exist; engine is connected to PostgreSQL.
    Postconditions: every trigger in ALL_TRIGGER_NAMES exists.  Functions
        use CREATE OR REPLACE and triggers are dropped first, so re-running
        is harmless.
    """
    sql_content = _load_all_trigger_sql()

    with engine.connect() as conn:
        conn.exec_driver_sql(sql_content)
        conn.commit()


def uninstall_ledger_triggers(engine: Engine) -> None:
    """Remove all ledger triggers and their functions."""
    with engine.connect() as conn:
        conn.exec_driver_sql(_load_sql_file(DROP_FILE))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """Names of ledger triggers currently present in pg_trigger."""
    trigger_list = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    check_sql = f"""
    SELECT tgname FROM pg_trigger
    WHERE tgname IN ({trigger_list})
    ORDER BY tgname;
    """

    with engine.connect() as conn:
        result = conn.execute(text(check_sql))
        return [row[0] for row in result]


def triggers_installed(engine: Engine) -> bool:
    """True iff every ledger trigger is installed."""
    return set(get_installed_triggers(engine)) == set(ALL_TRIGGER_NAMES)
