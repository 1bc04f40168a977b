"""
Module: stock_kernel.selectors.serial_selector
Responsibility: Read-only queries over serial units and their movement trail.
Architecture position: Kernel > Selectors.
"""

from sqlalchemy import select

from stock_kernel.domain.dtos import SerialMovementView, SerialView
from stock_kernel.domain.values import SerialStatus
from stock_kernel.models.serial import SerialMovement, SerialUnit
from stock_kernel.selectors.base import BaseSelector


def serial_to_view(unit: SerialUnit) -> SerialView:
    return SerialView(
        id=unit.id,
        serial_number=unit.serial_number,
        product_id=unit.product_id,
        variation_id=unit.variation_id,
        status=unit.status,
        current_location_id=unit.current_location_id,
        supplier_id=unit.supplier_id,
        purchase_cost=unit.purchase_cost,
        warranty_start=unit.warranty_start,
        warranty_end=unit.warranty_end,
    )


def serial_movement_to_view(m: SerialMovement) -> SerialMovementView:
    return SerialMovementView(
        id=m.id,
        serial_number_id=m.serial_number_id,
        movement_type=m.movement_type,
        from_location_id=m.from_location_id,
        to_location_id=m.to_location_id,
        from_status=m.from_status,
        to_status=m.to_status,
        reference_type=m.reference_type,
        reference_id=m.reference_id,
        actor_id=m.actor_id,
        moved_at=m.moved_at,
    )


class SerialSelector(BaseSelector):
    """Queries over serial_units and serial_movements."""

    def get(self, serial_id: int) -> SerialView | None:
        unit = self.session.get(SerialUnit, serial_id)
        return serial_to_view(unit) if unit is not None else None

    def get_by_number(self, product_id: int, serial_number: str) -> SerialView | None:
        unit = self.session.scalars(
            select(SerialUnit).where(
                SerialUnit.product_id == product_id,
                SerialUnit.serial_number == serial_number,
            )
        ).first()
        return serial_to_view(unit) if unit is not None else None

    def available_at(self, variation_id: int, location_id: int) -> list[SerialView]:
        stmt = (
            select(SerialUnit)
            .where(
                SerialUnit.variation_id == variation_id,
                SerialUnit.current_location_id == location_id,
                SerialUnit.status == SerialStatus.IN_STOCK.value,
            )
            .order_by(SerialUnit.id)
        )
        return [serial_to_view(u) for u in self.session.scalars(stmt)]

    def movements(self, serial_id: int) -> list[SerialMovementView]:
        stmt = (
            select(SerialMovement)
            .where(SerialMovement.serial_number_id == serial_id)
            .order_by(SerialMovement.id)
        )
        return [serial_movement_to_view(m) for m in self.session.scalars(stmt)]

