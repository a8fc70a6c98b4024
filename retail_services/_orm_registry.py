"""
ORM Registry (``retail_services._orm_registry``).

Responsibility
--------------
Import every ORM model so ``Base.metadata`` holds the full schema (kernel
tables plus the POS and Telebirr tables) before tables are created.

Usage
-----
The CLI and ``tests/conftest.py`` call ``create_all_tables()``.
"""


def import_all_orm_models() -> None:
    """Register kernel and service ORM models.  Idempotent."""
    import retail_kernel.models  # noqa: F401
    import retail_services.pos.orm  # noqa: F401
    import retail_services.telebirr.orm  # noqa: F401


def create_all_tables(install_triggers: bool = True) -> None:
    """Create every table, then optionally install the PostgreSQL triggers.

    Preconditions:
        Engine must be initialized via ``init_engine_from_url()``.
    """
    from retail_kernel.db.engine import create_tables

    import_all_orm_models()
    create_tables(install_triggers=install_triggers)


def drop_all_tables() -> None:
    from retail_kernel.db.engine import drop_tables

    import_all_orm_models()
    drop_tables()
