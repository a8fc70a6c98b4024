"""
InventoryLedger -- on-hand / reserved state machine with a movement log.

Responsibility:
    Maintains consistent on_hand and reserved quantities per (product,
    branch) and writes exactly one StockMovement per state change.  The
    only code path allowed to mutate InventoryItem rows.

Architecture position:
    Kernel > Services.  Called by the transaction orchestrators
    (retail_services) and by the CLI / seeders.

Invariants enforced:
    - on_hand >= 0 and 0 <= reserved <= on_hand after every call.
    - StockMovement.qty != 0 (zero-quantity opening/receive writes nothing).
    - Each call runs in its own SAVEPOINT inside the caller's transaction:
      a rejected call leaves no trace, an applied call commits or rolls back
      with the caller.
    - Affected item rows are locked with SELECT ... FOR UPDATE for the life
      of the caller's transaction.
    - transfer locks its two rows in the order of the string
      ``f"{product_id}{branch_id}"`` regardless of direction, so opposite
      transfers between the same branches cannot deadlock.
    - A movement with the same (ref, product, branch, type) already present
      means the call was applied before: nothing is written and the result
      is tagged ALREADY_APPLIED.

Failure modes:
    - InvalidQuantityError, InsufficientStockError, InsufficientReservedError,
      SameBranchTransferError, NegativeStockAdjustmentError,
      CapabilityDeniedError.  All raised before anything is persisted.
    - sqlalchemy.exc.OperationalError on lock timeout (propagated).

Audit relevance:
    StockMovement rows are the inventory audit trail; actor and metadata
    (adjust reason, transfer counterpart) travel on each row.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retail_kernel.domain.clock import Clock
from retail_kernel.exceptions import (
    CapabilityDeniedError,
    InsufficientReservedError,
    InsufficientStockError,
    InvalidQuantityError,
    NegativeStockAdjustmentError,
    SameBranchTransferError,
)
from retail_kernel.logging_config import get_logger
from retail_kernel.models.inventory import InventoryItem, MovementType, StockMovement
from retail_kernel.services.base import BaseService
from retail_kernel.services.capability import (
    INVENTORY_ADJUST,
    AllowAllCapabilities,
    CapabilityChecker,
)

logger = get_logger("services.inventory_ledger")

ZERO = Decimal("0")


class MovementOutcome(str, Enum):
    APPLIED = "APPLIED"
    ALREADY_APPLIED = "ALREADY_APPLIED"


@dataclass(frozen=True)
class InventorySnapshot:
    """Point-in-time quantities for one (product, branch)."""

    product_id: UUID
    branch_id: UUID
    on_hand: Decimal
    reserved: Decimal

    @property
    def available(self) -> Decimal:
        return self.on_hand - self.reserved


@dataclass(frozen=True)
class MovementContext:
    """Who is moving stock and any caller metadata to store on the movement."""

    actor_id: UUID | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MovementResult:
    outcome: MovementOutcome
    snapshot: InventorySnapshot
    movement_id: UUID | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == MovementOutcome.APPLIED


@dataclass(frozen=True)
class TransferResult:
    outcome: MovementOutcome
    source: InventorySnapshot
    destination: InventorySnapshot

    @property
    def applied(self) -> bool:
        return self.outcome == MovementOutcome.APPLIED


def _to_quantity(operation: str, qty: Any) -> Decimal:
    try:
        value = qty if isinstance(qty, Decimal) else Decimal(str(qty))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidQuantityError(operation, qty, "a number") from exc
    if not value.is_finite():
        raise InvalidQuantityError(operation, value, "a finite number")
    return value


def _require_non_negative(operation: str, qty: Any) -> Decimal:
    value = _to_quantity(operation, qty)
    if value < 0:
        raise InvalidQuantityError(operation, value, ">= 0")
    return value


def _require_positive(operation: str, qty: Any) -> Decimal:
    value = _to_quantity(operation, qty)
    if value <= 0:
        raise InvalidQuantityError(operation, value, "> 0")
    return value


def transfer_lock_order(product_id: UUID, branch_ids: list[UUID]) -> list[UUID]:
    """Branches of a transfer in the order their item rows must be locked."""
    return sorted(branch_ids, key=lambda branch_id: f"{product_id}{branch_id}")


class InventoryLedger(BaseService):
    """
    Inventory ledger engine.

    Contract:
        Every public mutator returns a tagged result (APPLIED /
        ALREADY_APPLIED) or raises a typed InventoryError / ValidationError.

    Non-goals:
        - Does NOT link reservations to issues: ``issue_stock`` never
          touches ``reserved``.  Callers that issue against a reservation
          call ``unreserve`` themselves.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        capability_checker: CapabilityChecker | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._capabilities = capability_checker or AllowAllCapabilities()

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _select_item_for_update(self, product_id: UUID, branch_id: UUID):
        return self.session.execute(
            select(InventoryItem)
            .where(
                InventoryItem.product_id == product_id,
                InventoryItem.branch_id == branch_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _lock_item(self, product_id: UUID, branch_id: UUID) -> InventoryItem:
        """Fetch-or-create the item row and hold its lock."""
        item = self._select_item_for_update(product_id, branch_id)
        if item is not None:
            return item

        savepoint = self.session.begin_nested()
        try:
            item = InventoryItem(
                product_id=product_id,
                branch_id=branch_id,
                on_hand=ZERO,
                reserved=ZERO,
            )
            self.session.add(item)
            self.session.flush()
            savepoint.commit()
            logger.debug(
                "inventory_item_created",
                extra={"product_id": product_id, "branch_id": branch_id},
            )
            return item
        except IntegrityError:
            logger.debug(
                "inventory_item_create_race_retry",
                extra={"product_id": product_id, "branch_id": branch_id},
            )
            savepoint.rollback()
            item = self._select_item_for_update(product_id, branch_id)
            if item is None:
                raise
            return item

    def _movement_exists(
        self,
        ref: str,
        product_id: UUID,
        branch_id: UUID,
        movement_type: MovementType,
    ) -> bool:
        return (
            self.session.execute(
                select(StockMovement.id)
                .where(
                    StockMovement.ref == ref,
                    StockMovement.product_id == product_id,
                    StockMovement.branch_id == branch_id,
                    StockMovement.type == movement_type.value,
                )
                .limit(1)
            ).first()
            is not None
        )

    def _write_movement(
        self,
        item: InventoryItem,
        movement_type: MovementType,
        signed_qty: Decimal,
        ref: str | None,
        ctx: MovementContext,
        extra_meta: dict[str, Any] | None = None,
    ) -> StockMovement:
        meta = {**ctx.meta, **(extra_meta or {})}
        movement = StockMovement(
            product_id=item.product_id,
            branch_id=item.branch_id,
            qty=signed_qty,
            type=movement_type.value,
            ref=ref,
            movement_meta=meta or None,
            created_by_id=ctx.actor_id,
        )
        self.session.add(movement)
        self.session.flush()
        return movement

    @staticmethod
    def _snapshot(item: InventoryItem) -> InventorySnapshot:
        return InventorySnapshot(
            product_id=item.product_id,
            branch_id=item.branch_id,
            on_hand=item.on_hand,
            reserved=item.reserved,
        )

    def _already_applied(
        self,
        event: str,
        item: InventoryItem,
        ref: str,
        movement_type: MovementType,
    ) -> MovementResult:
        logger.info(
            "movement_already_applied",
            extra={
                "operation": event,
                "movement_type": movement_type.value,
                "ref": ref,
                "product_id": item.product_id,
                "branch_id": item.branch_id,
            },
        )
        return MovementResult(MovementOutcome.ALREADY_APPLIED, self._snapshot(item))

    def _log_applied(self, event: str, item: InventoryItem, qty: Decimal, ref: str | None):
        logger.info(
            event,
            extra={
                "product_id": item.product_id,
                "branch_id": item.branch_id,
                "qty": qty,
                "ref": ref,
                "on_hand": item.on_hand,
                "reserved": item.reserved,
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_item(self, product_id: UUID, branch_id: UUID) -> InventorySnapshot:
        """Current quantities without locking; zeros if no item row exists."""
        item = self.session.execute(
            select(InventoryItem).where(
                InventoryItem.product_id == product_id,
                InventoryItem.branch_id == branch_id,
            )
        ).scalar_one_or_none()
        if item is None:
            return InventorySnapshot(product_id, branch_id, ZERO, ZERO)
        return self._snapshot(item)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def opening_balance(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """
        Seed on_hand.  No ref-based replay check: meant to be called once
        per (product, branch) by a seeder.
        """
        qty = _require_non_negative("opening balance", qty)
        ctx = ctx or MovementContext()

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            item.on_hand = item.on_hand + qty
            movement = None
            if qty != 0:
                movement = self._write_movement(item, MovementType.OPENING, qty, ref, ctx)
            self.session.flush()

        self._log_applied("stock_opening_balance_set", item, qty, ref)
        return MovementResult(
            MovementOutcome.APPLIED,
            self._snapshot(item),
            movement.id if movement else None,
        )

    def receive_stock(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """Add qty to on_hand and write RECEIVE."""
        qty = _require_non_negative("receive", qty)
        ctx = ctx or MovementContext()

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            if ref and self._movement_exists(ref, product_id, branch_id, MovementType.RECEIVE):
                return self._already_applied("receive", item, ref, MovementType.RECEIVE)

            item.on_hand = item.on_hand + qty
            movement = None
            if qty != 0:
                movement = self._write_movement(item, MovementType.RECEIVE, qty, ref, ctx)
            self.session.flush()

        self._log_applied("stock_received", item, qty, ref)
        return MovementResult(
            MovementOutcome.APPLIED,
            self._snapshot(item),
            movement.id if movement else None,
        )

    def reserve(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """Earmark qty of the available stock."""
        qty = _require_positive("reserve", qty)
        ctx = ctx or MovementContext()

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            if ref and self._movement_exists(ref, product_id, branch_id, MovementType.RESERVE):
                return self._already_applied("reserve", item, ref, MovementType.RESERVE)

            if item.available < qty:
                raise InsufficientStockError(
                    "reserve", str(product_id), str(branch_id), qty, item.available
                )

            item.reserved = item.reserved + qty
            movement = self._write_movement(item, MovementType.RESERVE, qty, ref, ctx)

        self._log_applied("stock_reserved", item, qty, ref)
        return MovementResult(MovementOutcome.APPLIED, self._snapshot(item), movement.id)

    def unreserve(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """Release qty of the reserved stock."""
        qty = _require_positive("unreserve", qty)
        ctx = ctx or MovementContext()

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            if ref and self._movement_exists(ref, product_id, branch_id, MovementType.UNRESERVE):
                return self._already_applied("unreserve", item, ref, MovementType.UNRESERVE)

            if item.reserved < qty:
                raise InsufficientReservedError(
                    str(product_id), str(branch_id), qty, item.reserved
                )

            item.reserved = item.reserved - qty
            movement = self._write_movement(item, MovementType.UNRESERVE, qty, ref, ctx)

        self._log_applied("stock_unreserved", item, qty, ref)
        return MovementResult(MovementOutcome.APPLIED, self._snapshot(item), movement.id)

    def issue_stock(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """
        Remove qty from on_hand (ISSUE with a negative quantity).

        Only available stock can be issued; ``reserved`` is untouched.
        """
        qty = _require_positive("issue", qty)
        ctx = ctx or MovementContext()

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            if ref and self._movement_exists(ref, product_id, branch_id, MovementType.ISSUE):
                return self._already_applied("issue", item, ref, MovementType.ISSUE)

            if item.available < qty:
                raise InsufficientStockError(
                    "issue", str(product_id), str(branch_id), qty, item.available
                )

            item.on_hand = item.on_hand - qty
            movement = self._write_movement(item, MovementType.ISSUE, -qty, ref, ctx)

        self._log_applied("stock_issued", item, qty, ref)
        return MovementResult(MovementOutcome.APPLIED, self._snapshot(item), movement.id)

    def transfer(
        self,
        product_id: UUID,
        from_branch_id: UUID,
        to_branch_id: UUID,
        qty: Any,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> TransferResult:
        """
        Move qty of available stock from one branch to another.

        Writes TRANSFER_OUT at the source and TRANSFER_IN at the destination.
        With a ref, both legs already present means the transfer is done.
        """
        qty = _require_positive("transfer", qty)
        ctx = ctx or MovementContext()
        if from_branch_id == to_branch_id:
            raise SameBranchTransferError(str(from_branch_id))

        with self.session.begin_nested():
            locked: dict[UUID, InventoryItem] = {}
            for branch_id in transfer_lock_order(product_id, [from_branch_id, to_branch_id]):
                locked[branch_id] = self._lock_item(product_id, branch_id)
            source = locked[from_branch_id]
            destination = locked[to_branch_id]

            if (
                ref
                and self._movement_exists(ref, product_id, from_branch_id, MovementType.TRANSFER_OUT)
                and self._movement_exists(ref, product_id, to_branch_id, MovementType.TRANSFER_IN)
            ):
                logger.info(
                    "movement_already_applied",
                    extra={
                        "operation": "transfer",
                        "ref": ref,
                        "product_id": product_id,
                        "from_branch_id": from_branch_id,
                        "to_branch_id": to_branch_id,
                    },
                )
                return TransferResult(
                    MovementOutcome.ALREADY_APPLIED,
                    self._snapshot(source),
                    self._snapshot(destination),
                )

            if source.available < qty:
                raise InsufficientStockError(
                    "transfer", str(product_id), str(from_branch_id), qty, source.available
                )

            source.on_hand = source.on_hand - qty
            self._write_movement(
                source,
                MovementType.TRANSFER_OUT,
                -qty,
                ref,
                ctx,
                {"to_branch_id": str(to_branch_id)},
            )
            destination.on_hand = destination.on_hand + qty
            self._write_movement(
                destination,
                MovementType.TRANSFER_IN,
                qty,
                ref,
                ctx,
                {"from_branch_id": str(from_branch_id)},
            )

        logger.info(
            "stock_transferred",
            extra={
                "product_id": product_id,
                "from_branch_id": from_branch_id,
                "to_branch_id": to_branch_id,
                "qty": qty,
                "ref": ref,
            },
        )
        return TransferResult(
            MovementOutcome.APPLIED,
            self._snapshot(source),
            self._snapshot(destination),
        )

    def adjust(
        self,
        product_id: UUID,
        branch_id: UUID,
        qty: Any,
        reason: str | None = None,
        ref: str | None = None,
        ctx: MovementContext | None = None,
    ) -> MovementResult:
        """
        Apply a signed correction to on_hand (stock count, damage, ...).

        Requires the ``inventory.adjust`` capability for the branch.  The
        result may not leave on_hand negative or below reserved.
        """
        qty = _to_quantity("adjust", qty)
        if qty == 0:
            raise InvalidQuantityError("adjust", qty, "non-zero")
        ctx = ctx or MovementContext()

        if not self._capabilities.has_capability(ctx.actor_id, INVENTORY_ADJUST, branch_id):
            logger.warning(
                "capability_denied",
                extra={
                    "actor_id": ctx.actor_id,
                    "capability": INVENTORY_ADJUST,
                    "branch_id": branch_id,
                },
            )
            raise CapabilityDeniedError(
                str(ctx.actor_id) if ctx.actor_id else None,
                INVENTORY_ADJUST,
                str(branch_id),
            )

        with self.session.begin_nested():
            item = self._lock_item(product_id, branch_id)
            if ref and self._movement_exists(ref, product_id, branch_id, MovementType.ADJUST):
                return self._already_applied("adjust", item, ref, MovementType.ADJUST)

            new_on_hand = item.on_hand + qty
            if new_on_hand < 0 or new_on_hand < item.reserved:
                raise NegativeStockAdjustmentError(
                    str(product_id), str(branch_id), qty, item.on_hand, item.reserved
                )

            item.on_hand = new_on_hand
            movement = self._write_movement(
                item,
                MovementType.ADJUST,
                qty,
                ref,
                ctx,
                {"reason": reason} if reason else None,
            )

        self._log_applied("stock_adjusted", item, qty, ref)
        return MovementResult(MovementOutcome.APPLIED, self._snapshot(item), movement.id)
