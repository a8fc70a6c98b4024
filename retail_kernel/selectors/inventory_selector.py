"""
Module: retail_kernel.selectors.inventory_selector
Responsibility: Read-only queries over the stock movement log.

Audit relevance:
    The movement log is the inventory audit trail.  Replaying the signed
    quantities of OPENING, RECEIVE, ISSUE, TRANSFER_IN, TRANSFER_OUT and
    ADJUST movements for a (product, branch) reproduces on_hand;
    RESERVE minus UNRESERVE reproduces reserved.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from retail_kernel.models.inventory import MovementType, StockMovement
from retail_kernel.selectors.base import BaseSelector

ON_HAND_TYPES = frozenset(
    {
        MovementType.OPENING,
        MovementType.RECEIVE,
        MovementType.ISSUE,
        MovementType.TRANSFER_IN,
        MovementType.TRANSFER_OUT,
        MovementType.ADJUST,
    }
)


@dataclass(frozen=True)
class MovementDTO:
    id: UUID
    product_id: UUID
    branch_id: UUID
    type: MovementType
    qty: Decimal
    ref: str | None
    meta: dict | None
    created_by_id: UUID | None
    created_at: datetime | None


@dataclass(frozen=True)
class ReplayedQuantities:
    """on_hand / reserved derived from the movement log alone."""

    on_hand: Decimal
    reserved: Decimal


def _to_dto(movement: StockMovement) -> MovementDTO:
    return MovementDTO(
        id=movement.id,
        product_id=movement.product_id,
        branch_id=movement.branch_id,
        type=MovementType(movement.type),
        qty=movement.qty,
        ref=movement.ref,
        meta=movement.movement_meta,
        created_by_id=movement.created_by_id,
        created_at=movement.created_at,
    )


class InventorySelector(BaseSelector):
    """Movement log queries."""

    def movements_by_ref(self, ref: str) -> list[MovementDTO]:
        rows = self.session.execute(
            select(StockMovement)
            .where(StockMovement.ref == ref)
            .order_by(StockMovement.created_at, StockMovement.id)
        ).scalars().all()
        return [_to_dto(row) for row in rows]

    def movements_for(
        self,
        product_id: UUID,
        branch_id: UUID,
        movement_type: MovementType | None = None,
    ) -> list[MovementDTO]:
        query = select(StockMovement).where(
            StockMovement.product_id == product_id,
            StockMovement.branch_id == branch_id,
        )
        if movement_type is not None:
            query = query.where(StockMovement.type == movement_type)
        rows = self.session.execute(
            query.order_by(StockMovement.created_at, StockMovement.id)
        ).scalars().all()
        return [_to_dto(row) for row in rows]

    def replay_quantities(self, product_id: UUID, branch_id: UUID) -> ReplayedQuantities:
        on_hand = Decimal("0")
        reserved = Decimal("0")
        for movement in self.movements_for(product_id, branch_id):
            if movement.type in ON_HAND_TYPES:
                on_hand += movement.qty
            elif movement.type == MovementType.RESERVE:
                reserved += movement.qty
            elif movement.type == MovementType.UNRESERVE:
                reserved -= movement.qty
        return ReplayedQuantities(on_hand=on_hand, reserved=reserved)
