"""
Module: stock_kernel.selectors.movement_selector
Responsibility: Read-only queries over stock movements and balances.
Architecture position: Kernel > Selectors.

Every query orders movements by id, which is the order they were written in
and the order their balance_after values chain in.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, union

from stock_kernel.domain.dtos import BalanceView, MovementView
from stock_kernel.models.balance import StockBalance
from stock_kernel.models.catalog import Location
from stock_kernel.models.movement import StockMovement
from stock_kernel.selectors.base import BaseSelector


def movement_to_view(m: StockMovement) -> MovementView:
    return MovementView(
        id=m.id,
        product_id=m.product_id,
        variation_id=m.variation_id,
        location_id=m.location_id,
        movement_type=m.movement_type,
        delta=m.delta,
        balance_after=m.balance_after,
        unit_cost=m.unit_cost,
        reference_type=m.reference_type,
        reference_id=m.reference_id,
        actor_id=m.actor_id,
        created_at=m.created_at,
        notes=m.notes,
        is_corrective=m.is_corrective,
    )


class MovementSelector(BaseSelector):
    """Queries over stock_movements and stock_balances."""

    def history(
        self,
        variation_id: int,
        location_id: int,
        *,
        after_id: int = 0,
        limit: int | None = None,
    ) -> list[MovementView]:
        stmt = (
            select(StockMovement)
            .where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
                StockMovement.id > after_id,
            )
            .order_by(StockMovement.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [movement_to_view(m) for m in self.session.scalars(stmt)]

    def sum_deltas(self, variation_id: int, location_id: int) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.delta), 0)).where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
            )
        ).scalar_one()
        return Decimal(str(total))

    def count(self, variation_id: int, location_id: int) -> int:
        return self.session.execute(
            select(func.count(StockMovement.id)).where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
            )
        ).scalar_one()

    def count_since(self, variation_id: int, location_id: int, since: datetime) -> int:
        return self.session.execute(
            select(func.count(StockMovement.id)).where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
                StockMovement.created_at >= since,
            )
        ).scalar_one()

    def last_unit_cost(self, variation_id: int, location_id: int) -> Decimal | None:
        """Unit cost of the most recent movement that carried one."""
        return self.session.scalars(
            select(StockMovement.unit_cost)
            .where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
                StockMovement.unit_cost.is_not(None),
            )
            .order_by(StockMovement.id.desc())
            .limit(1)
        ).first()

    def last(self, variation_id: int, location_id: int) -> MovementView | None:
        m = self.session.scalars(
            select(StockMovement)
            .where(
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
            )
            .order_by(StockMovement.id.desc())
            .limit(1)
        ).first()
        return movement_to_view(m) if m is not None else None

    def find_by_key(
        self,
        reference_type: str,
        reference_id: str,
        movement_type: str,
        variation_id: int,
        location_id: int,
    ) -> MovementView | None:
        """Look up a movement by its idempotency key."""
        m = self.session.scalars(
            select(StockMovement).where(
                StockMovement.reference_type == reference_type,
                StockMovement.reference_id == str(reference_id),
                StockMovement.movement_type == movement_type,
                StockMovement.variation_id == variation_id,
                StockMovement.location_id == location_id,
            )
        ).first()
        return movement_to_view(m) if m is not None else None

    def for_reference(self, reference_type: str, reference_id: str) -> list[MovementView]:
        """All movements written on behalf of one business event."""
        stmt = (
            select(StockMovement)
            .where(
                StockMovement.reference_type == reference_type,
                StockMovement.reference_id == str(reference_id),
            )
            .order_by(StockMovement.id)
        )
        return [movement_to_view(m) for m in self.session.scalars(stmt)]

    def balance(self, variation_id: int, location_id: int) -> BalanceView | None:
        row = self.session.scalars(
            select(StockBalance).where(
                StockBalance.variation_id == variation_id,
                StockBalance.location_id == location_id,
            ).execution_options(populate_existing=True)
        ).first()
        if row is None:
            return None
        return BalanceView(
            variation_id=row.variation_id,
            location_id=row.location_id,
            qty_available=row.qty_available,
            version=row.version,
        )

    def pairs(
        self,
        *,
        business_id: int | None = None,
        location_id: int | None = None,
    ) -> list[tuple[int, int]]:
        """
        Every (variation, location) that has a balance row or a movement.

        Pairs with movements but no balance row are included: that is one of
        the mismatches reconciliation exists to find.
        """
        balance_pairs = select(StockBalance.variation_id, StockBalance.location_id)
        movement_pairs = select(
            StockMovement.variation_id, StockMovement.location_id
        ).distinct()
        if location_id is not None:
            balance_pairs = balance_pairs.where(StockBalance.location_id == location_id)
            movement_pairs = movement_pairs.where(StockMovement.location_id == location_id)
        if business_id is not None:
            scoped = select(Location.id).where(Location.business_id == business_id)
            balance_pairs = balance_pairs.where(StockBalance.location_id.in_(scoped))
            movement_pairs = movement_pairs.where(StockMovement.location_id.in_(scoped))

        combined = union(balance_pairs, movement_pairs).subquery()
        rows = self.session.execute(
            select(combined.c.variation_id, combined.c.location_id).order_by(
                combined.c.location_id, combined.c.variation_id
            )
        ).all()
        return [(int(v), int(l)) for v, l in rows]
