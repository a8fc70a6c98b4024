"""
Module: retail_kernel.selectors.ledger_selector
Responsibility: Read-only balance queries over journal lines.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - No stored balances.  Every balance is computed at query time from
      lines of journals that were posted (posted_at set).  A reversed or
      voided-after-posting journal still counts; its reversing journal
      cancels it.

Non-goals:
    - Dimension filtering is done in Python, not with JSON operators, so
      the same query runs on SQLite and PostgreSQL.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from retail_kernel.exceptions import AccountNotFoundError
from retail_kernel.models.account import GlAccount
from retail_kernel.models.journal import GlJournal, GlLine
from retail_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class AccountBalance:
    account_id: UUID
    account_code: str
    debit_total: Decimal
    credit_total: Decimal
    line_count: int

    @property
    def balance(self) -> Decimal:
        """Net balance (debits - credits)."""
        return self.debit_total - self.credit_total


class LedgerSelector(BaseSelector):
    """Account balances derived from posted lines."""

    def account_balance(
        self,
        account_code: str,
        dimensions: dict | None = None,
    ) -> AccountBalance:
        """
        Sum of debit minus credit for one account.

        Args:
            account_code: GL account code.
            dimensions: Only lines whose dimensions contain every given
                key/value pair are counted.

        Raises:
            AccountNotFoundError: unknown account code.
        """
        account = self.session.execute(
            select(GlAccount).where(GlAccount.code == account_code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_code)

        rows = self.session.execute(
            select(GlLine.debit, GlLine.credit, GlLine.dimensions)
            .join(GlJournal, GlLine.journal_id == GlJournal.id)
            .where(
                GlLine.account_id == account.id,
                GlJournal.posted_at.is_not(None),
            )
        ).all()

        debit_total = Decimal("0")
        credit_total = Decimal("0")
        count = 0
        for debit, credit, line_dimensions in rows:
            if dimensions:
                line_dimensions = line_dimensions or {}
                if any(line_dimensions.get(k) != v for k, v in dimensions.items()):
                    continue
            debit_total += debit or Decimal("0")
            credit_total += credit or Decimal("0")
            count += 1

        return AccountBalance(
            account_id=account.id,
            account_code=account.code,
            debit_total=debit_total,
            credit_total=credit_total,
            line_count=count,
        )
