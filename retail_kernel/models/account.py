"""
Module: retail_kernel.models.account
Responsibility: ORM persistence for the chart of accounts -- the target of
    every GL line.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - code is unique.
    - Only accounts with is_postable=True and status=ACTIVE may receive
      journal lines (checked by GlPostingEngine.validate_draft, not here).

Failure modes:
    - AccountNotFoundError when a line references a missing code/id.
"""

from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from retail_kernel.db.base import TrackedBase, UUIDString


class AccountType(str, Enum):
    """Account classification, including contra accounts."""

    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"
    CONTRA_ASSET = "CONTRA_ASSET"
    CONTRA_LIABILITY = "CONTRA_LIABILITY"
    CONTRA_EQUITY = "CONTRA_EQUITY"
    CONTRA_REVENUE = "CONTRA_REVENUE"
    CONTRA_EXPENSE = "CONTRA_EXPENSE"


class NormalBalance(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


# Contra accounts carry the opposite normal balance of their parent class
NORMAL_BALANCE_BY_TYPE: dict[AccountType, NormalBalance] = {
    AccountType.ASSET: NormalBalance.DEBIT,
    AccountType.EXPENSE: NormalBalance.DEBIT,
    AccountType.CONTRA_LIABILITY: NormalBalance.DEBIT,
    AccountType.CONTRA_EQUITY: NormalBalance.DEBIT,
    AccountType.CONTRA_REVENUE: NormalBalance.DEBIT,
    AccountType.LIABILITY: NormalBalance.CREDIT,
    AccountType.EQUITY: NormalBalance.CREDIT,
    AccountType.REVENUE: NormalBalance.CREDIT,
    AccountType.CONTRA_ASSET: NormalBalance.CREDIT,
    AccountType.CONTRA_EXPENSE: NormalBalance.CREDIT,
}


def normal_balance_for(account_type: AccountType | str) -> NormalBalance:
    """Default normal balance for an account type."""
    return NORMAL_BALANCE_BY_TYPE[AccountType(account_type)]


class GlAccount(TrackedBase):
    """
    Chart-of-accounts node.

    Guarantees:
        - code is unique and non-null.
        - normal_balance defaults from account_type when not supplied.
    """

    __tablename__ = "gl_accounts"
    __table_args__ = (
        Index("idx_gl_account_type", "account_type"),
        Index("idx_gl_account_status", "status"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    account_type: Mapped[AccountType] = mapped_column(String(20), nullable=False)

    normal_balance: Mapped[NormalBalance] = mapped_column(String(10), nullable=False)

    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("gl_accounts.id"),
        nullable=True,
    )

    is_postable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    status: Mapped[AccountStatus] = mapped_column(
        String(10),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )

    def __init__(self, **kwargs):
        if kwargs.get("normal_balance") is None and kwargs.get("account_type") is not None:
            kwargs["normal_balance"] = normal_balance_for(kwargs["account_type"])
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<GlAccount {self.code}: {self.name}>"

    @property
    def can_receive_postings(self) -> bool:
        return self.is_postable and self.status == AccountStatus.ACTIVE
