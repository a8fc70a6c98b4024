"""
Module: retail_kernel.models.catalog
Responsibility: ORM persistence for the reference entities the ledgers point
    at: products and branches.
Architecture position: Kernel > Models.  May import from db/base.py only.

These rows are owned by the catalogue / administration screens.  The
inventory engine only reads them (orchestrators resolve and check is_active
before any mutation begins).
"""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from retail_kernel.db.base import TrackedBase


class Product(TrackedBase):
    """Sellable product.  sku is unique."""

    __tablename__ = "products"

    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Product {self.sku}>"


class Branch(TrackedBase):
    """Physical location holding stock.  code is unique."""

    __tablename__ = "branches"

    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Branch {self.code}>"
