"""
retail-ledger command line.

Usage:
  retail-ledger init-db [--drop] [--seed-chart]
  retail-ledger validate-rules [--rules PATH]
  retail-ledger sweep-idempotency
  retail-ledger stock --sku SKU --branch CODE
  retail-ledger verify-audit

``--db-url`` overrides DATABASE_URL for any command.
"""

import argparse
import sys

from sqlalchemy import select

from retail_config.loader import collect_posting_rule_errors, load_posting_rules
from retail_config.settings import Settings
from retail_kernel.db.engine import get_session_factory, init_engine_from_url, session_scope
from retail_kernel.db.immutability import register_immutability_listeners
from retail_kernel.exceptions import AuditChainBrokenError
from retail_kernel.logging_config import configure_logging
from retail_kernel.models.account import AccountType, GlAccount
from retail_kernel.models.catalog import Branch, Product
from retail_kernel.services.auditor_service import AuditorService
from retail_kernel.services.idempotency_guard import IdempotencyGuard
from retail_kernel.services.inventory_ledger import InventoryLedger
from retail_services._orm_registry import create_all_tables, drop_all_tables

# Accounts referenced by the shipped posting-rule table.
DEFAULT_CHART = (
    ("1001", "Cash on Hand", AccountType.ASSET),
    ("1101", "Bank - CBE", AccountType.ASSET),
    ("1200", "Telebirr Distributor", AccountType.LIABILITY),
    ("1300", "AR - Agents", AccountType.ASSET),
    ("2001", "Sales Tax Payable", AccountType.LIABILITY),
    ("4000", "Sales Revenue", AccountType.REVENUE),
    ("5001", "Sales Discounts", AccountType.EXPENSE),
)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="retail-ledger", description="Retail ledger administration")
    p.add_argument("--db-url", default=None, help="Database URL (default: DATABASE_URL)")
    sub = p.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create tables (and triggers on PostgreSQL)")
    init_db.add_argument("--drop", action="store_true", help="Drop existing tables first")
    init_db.add_argument(
        "--seed-chart",
        action="store_true",
        help="Create the GL accounts the shipped posting rules reference",
    )

    rules = sub.add_parser("validate-rules", help="Check posting rules against the chart of accounts")
    rules.add_argument("--rules", default=None, help="Posting rule YAML (default: POSTING_RULES_PATH)")

    sub.add_parser("sweep-idempotency", help="Mark expired PENDING idempotency keys FAILED")

    stock = sub.add_parser("stock", help="Show on-hand / reserved for a product at a branch")
    stock.add_argument("--sku", required=True)
    stock.add_argument("--branch", required=True, help="Branch code")

    sub.add_parser("verify-audit", help="Validate the audit hash chain")

    return p.parse_args(argv)


def seed_chart(session) -> int:
    """Insert missing DEFAULT_CHART accounts; return how many were created."""
    created = 0
    for code, name, account_type in DEFAULT_CHART:
        exists = session.execute(
            select(GlAccount.id).where(GlAccount.code == code)
        ).first()
        if exists is None:
            session.add(GlAccount(code=code, name=name, account_type=account_type))
            created += 1
    session.flush()
    return created


def _cmd_init_db(args: argparse.Namespace) -> int:
    if args.drop:
        drop_all_tables()
        print("  Dropped all tables.")
    create_all_tables(install_triggers=True)
    print("  Schema created.")
    if args.seed_chart:
        with session_scope() as session:
            created = seed_chart(session)
        print(f"  Seeded {created} GL account(s).")
    return 0


def _cmd_validate_rules(args: argparse.Namespace, settings: Settings) -> int:
    rules = load_posting_rules(args.rules or settings.posting_rules_path)
    with session_scope() as session:
        errors = collect_posting_rule_errors(session, rules)
    if errors:
        print(f"  Posting rules INVALID ({rules.source_path}):", file=sys.stderr)
        for error in errors:
            print(f"    - {error}", file=sys.stderr)
        return 1
    print(f"  Posting rules OK ({rules.source_path}).")
    return 0


def _cmd_sweep(settings: Settings) -> int:
    guard = IdempotencyGuard(
        get_session_factory(),
        lock_ttl_seconds=settings.idempotency_lock_timeout,
    )
    count = guard.sweep_expired()
    print(f"  Expired {count} idempotency key(s).")
    return 0


def _cmd_stock(args: argparse.Namespace) -> int:
    with session_scope() as session:
        product = session.execute(
            select(Product).where(Product.sku == args.sku)
        ).scalar_one_or_none()
        branch = session.execute(
            select(Branch).where(Branch.code == args.branch)
        ).scalar_one_or_none()
        if product is None or branch is None:
            missing = "product" if product is None else "branch"
            print(f"  ERROR: unknown {missing}", file=sys.stderr)
            return 1
        snapshot = InventoryLedger(session).get_item(product.id, branch.id)
    print(f"  {args.sku} @ {args.branch}")
    print(f"    on_hand:   {snapshot.on_hand}")
    print(f"    reserved:  {snapshot.reserved}")
    print(f"    available: {snapshot.available}")
    return 0


def _cmd_verify_audit() -> int:
    try:
        with session_scope() as session:
            AuditorService(session).validate_chain()
    except AuditChainBrokenError as exc:
        print(f"  Audit chain BROKEN: {exc}", file=sys.stderr)
        return 1
    print("  Audit chain OK.")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = Settings.from_env()
    configure_logging(level=settings.log_level)

    init_engine_from_url(args.db_url or settings.database_url)
    register_immutability_listeners()

    if args.command == "init-db":
        return _cmd_init_db(args)
    if args.command == "validate-rules":
        return _cmd_validate_rules(args, settings)
    if args.command == "sweep-idempotency":
        return _cmd_sweep(settings)
    if args.command == "stock":
        return _cmd_stock(args)
    if args.command == "verify-audit":
        return _cmd_verify_audit()
    return 2


if __name__ == "__main__":
    sys.exit(main())
