"""
SerialRegistry -- lifecycle of individually tracked units.

Responsibility:
    Registers serial units and moves them through SERIAL_LIFECYCLE, writing
    one SerialMovement per transition.

Architecture position:
    Kernel > Services -- imperative shell.  Transfer and return services
    call ``transition`` alongside their quantity movements; the quantity
    side always goes through BalanceStore.

Invariants enforced:
    - Exactly one SerialUnit per (product, serial_number).  Units are never
      deleted.
    - Every SerialMovement carries the flushed unit's own id as
      serial_number_id.  A unit without a database id never gets a movement.
    - Only edges declared in SERIAL_LIFECYCLE are taken; warranty_return is
      terminal.

Failure modes:
    - ValidationError: malformed serial number, bad warranty window, unit
      not available where the caller expects it.
    - DuplicateSerialError: serial number already registered for the product.
    - SerialUnitNotFoundError / VariationNotFoundError / LocationNotFoundError.
    - InvalidTransitionError: edge not in the lifecycle.

Audit relevance:
    Logs ``serial_registered``, ``serials_bulk_registered`` and
    ``serial_transitioned``.
"""

from collections.abc import Iterable
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.db.types import to_decimal
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import (
    BulkRegistrationResult,
    SerialMovementView,
    SerialRegistrationFailure,
    SerialView,
)
from stock_kernel.domain.values import (
    SERIAL_NUMBER_MAX_LENGTH,
    SERIAL_NUMBER_MIN_LENGTH,
    SERIAL_NUMBER_PATTERN,
    ItemCondition,
    SerialStatus,
    coerce_enum,
)
from stock_kernel.domain.workflow import SERIAL_LIFECYCLE
from stock_kernel.exceptions import (
    DuplicateSerialError,
    InvalidTransitionError,
    LocationNotFoundError,
    NotFoundError,
    SerialUnitNotFoundError,
    ValidationError,
    VariationNotFoundError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.catalog import Location, ProductVariation
from stock_kernel.models.serial import SerialMovement, SerialUnit
from stock_kernel.selectors.serial_selector import SerialSelector, serial_to_view
from stock_kernel.services.base import BaseService

logger = get_logger("services.serial_registry")

REGISTRATION_MOVEMENT_TYPE = "purchase"


def validate_serial_number(serial_number) -> str:
    """Strip and validate a serial number, returning the clean value."""
    if serial_number is None:
        raise ValidationError("serial_number is required", field="serial_number")
    value = str(serial_number).strip()
    if len(value) < SERIAL_NUMBER_MIN_LENGTH:
        raise ValidationError(
            f"Serial number must be at least {SERIAL_NUMBER_MIN_LENGTH} characters",
            field="serial_number",
        )
    if len(value) > SERIAL_NUMBER_MAX_LENGTH:
        raise ValidationError(
            f"Serial number must be at most {SERIAL_NUMBER_MAX_LENGTH} characters",
            field="serial_number",
        )
    if not SERIAL_NUMBER_PATTERN.match(value):
        raise ValidationError(
            "Serial number may only contain letters, digits, hyphens and underscores",
            field="serial_number",
        )
    return value


class SerialRegistry(BaseService):
    """
    Registry of serialized units.

    Contract:
        ``transition`` returns the live, flushed SerialUnit.  Reads return
        SerialView DTOs.

    Guarantees:
        - One SerialMovement per registration or transition, in the same
          savepoint as the unit change.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._selector = SerialSelector(session)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        serial_number: str,
        variation_id: int,
        location_id: int,
        actor_id: int | None = None,
        *,
        supplier_id: int | None = None,
        purchase_cost=None,
        warranty_start: date | None = None,
        warranty_end: date | None = None,
        reference_type: str = "serial_registration",
        reference_id: str | None = None,
    ) -> SerialUnit:
        """
        Register a new unit as ``in_stock`` at ``location_id``.

        Raises:
            DuplicateSerialError: The product already has this serial number.
        """
        serial_number = validate_serial_number(serial_number)
        variation = self.session.get(ProductVariation, variation_id)
        if variation is None:
            raise VariationNotFoundError(variation_id)
        if self.session.get(Location, location_id) is None:
            raise LocationNotFoundError(location_id)
        if not variation.product.is_serialized:
            raise ValidationError(
                f"Product {variation.product_id} is not serialized",
                field="variation_id",
            )
        if purchase_cost is not None:
            purchase_cost = to_decimal(purchase_cost, "purchase_cost")
            if purchase_cost < 0:
                raise ValidationError("purchase_cost cannot be negative", field="purchase_cost")
        if warranty_start and warranty_end and warranty_end < warranty_start:
            raise ValidationError(
                "warranty_end cannot be before warranty_start",
                field="warranty_end",
            )

        if self._selector.get_by_number(variation.product_id, serial_number) is not None:
            raise DuplicateSerialError(serial_number, variation.product_id)

        now = self.clock.now()
        try:
            with self.session.begin_nested():
                unit = SerialUnit(
                    serial_number=serial_number,
                    product_id=variation.product_id,
                    variation_id=variation_id,
                    status=SerialStatus.IN_STOCK.value,
                    current_location_id=location_id,
                    supplier_id=supplier_id,
                    purchase_cost=purchase_cost,
                    warranty_start=warranty_start,
                    warranty_end=warranty_end,
                )
                self.session.add(unit)
                self.session.flush()

                self._record_movement(
                    unit,
                    movement_type=REGISTRATION_MOVEMENT_TYPE,
                    from_location_id=None,
                    to_location_id=location_id,
                    from_status=None,
                    reference_type=reference_type,
                    reference_id=reference_id or str(unit.id),
                    actor_id=actor_id,
                    moved_at=now,
                )
        except IntegrityError:
            raise DuplicateSerialError(serial_number, variation.product_id)

        logger.info(
            "serial_registered",
            extra={
                "serial_id": unit.id,
                "serial_number": serial_number,
                "variation_id": variation_id,
                "location_id": location_id,
            },
        )
        return unit

    def register_many(
        self,
        serial_numbers: Iterable[str],
        variation_id: int,
        location_id: int,
        actor_id: int | None = None,
        **opts: Any,
    ) -> BulkRegistrationResult:
        """
        Register the serials of one purchase receipt.

        Each number is registered on its own: a duplicate or malformed
        serial is reported in ``failures`` and the rest still go in.
        ``opts`` are passed to ``register`` for every unit.
        """
        registered: list[SerialView] = []
        failures: list[SerialRegistrationFailure] = []
        for serial_number in serial_numbers:
            try:
                unit = self.register(serial_number, variation_id, location_id, actor_id, **opts)
            except (ValidationError, NotFoundError) as exc:
                failures.append(
                    SerialRegistrationFailure(str(serial_number), exc.code, str(exc))
                )
                continue
            registered.append(serial_to_view(unit))

        logger.info(
            "serials_bulk_registered",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "registered_count": len(registered),
                "failure_count": len(failures),
            },
        )
        return BulkRegistrationResult(tuple(registered), tuple(failures))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        serial_id: int,
        new_status: str,
        reference_type: str,
        reference_id,
        actor_id: int | None = None,
        *,
        to_location_id: int | None = None,
        movement_type: str | None = None,
        condition: str | None = None,
    ) -> SerialUnit:
        """
        Move a unit along one lifecycle edge.

        ``to_location_id`` is required when the unit arrives at a location
        (in_transit -> in_stock) and optional elsewhere; when given, the
        unit's current location becomes it.  ``movement_type`` defaults to
        the edge's action.
        """
        target = coerce_enum(SerialStatus, new_status, "new_status")
        if not reference_type or reference_id is None or not str(reference_id).strip():
            raise ValidationError("reference_type and reference_id are required", field="reference_id")
        if condition is not None:
            condition = coerce_enum(ItemCondition, condition, "condition").value

        unit = self._lock(serial_id)
        current = unit.status
        edge = SERIAL_LIFECYCLE.find(current, target.value)
        if edge is None:
            logger.warning(
                "serial_transition_rejected",
                extra={
                    "serial_id": serial_id,
                    "from_status": current,
                    "to_status": target.value,
                },
            )
            raise InvalidTransitionError("SerialUnit", serial_id, current, target.value)

        if current == SerialStatus.IN_TRANSIT.value and target is SerialStatus.IN_STOCK:
            if to_location_id is None:
                raise ValidationError(
                    "to_location_id is required when a unit arrives",
                    field="to_location_id",
                )
        if to_location_id is not None and self.session.get(Location, to_location_id) is None:
            raise LocationNotFoundError(to_location_id)

        from_location_id = unit.current_location_id
        with self.session.begin_nested():
            unit.status = target.value
            if to_location_id is not None and target is not SerialStatus.IN_TRANSIT:
                unit.current_location_id = to_location_id
            if condition is not None:
                unit.condition = condition
            self.session.flush()

            self._record_movement(
                unit,
                movement_type=movement_type or edge.action,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                from_status=current,
                reference_type=reference_type,
                reference_id=str(reference_id),
                actor_id=actor_id,
                moved_at=self.clock.now(),
            )

        logger.info(
            "serial_transitioned",
            extra={
                "serial_id": unit.id,
                "from_status": current,
                "to_status": target.value,
                "from_location_id": from_location_id,
                "to_location_id": to_location_id,
                "reference_type": reference_type,
                "reference_id": str(reference_id),
            },
        )
        return unit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, serial_id: int) -> SerialView:
        view = self._selector.get(serial_id)
        if view is None:
            raise SerialUnitNotFoundError(serial_id)
        return view

    def get_by_number(self, product_id: int, serial_number: str) -> SerialView | None:
        return self._selector.get_by_number(product_id, str(serial_number).strip())

    def available_at(self, variation_id: int, location_id: int) -> list[SerialView]:
        return self._selector.available_at(variation_id, location_id)

    def movements(self, serial_id: int) -> list[SerialMovementView]:
        return self._selector.movements(serial_id)

    def is_under_warranty(self, serial_id: int, as_of: date | None = None) -> bool:
        """True when ``as_of`` (default today) falls inside the warranty window."""
        unit = self.get(serial_id)
        if unit.warranty_end is None:
            return False
        as_of = as_of or self.clock.today()
        if unit.warranty_start is not None and as_of < unit.warranty_start:
            return False
        return as_of <= unit.warranty_end

    def require_available(
        self,
        serial_id: int,
        variation_id: int,
        location_id: int,
    ) -> SerialView:
        """The unit must be in_stock, of ``variation_id``, at ``location_id``."""
        unit = self.get(serial_id)
        if unit.variation_id != variation_id:
            raise ValidationError(
                f"Serial {unit.serial_number} belongs to variation {unit.variation_id}, "
                f"not {variation_id}",
                field="serial_ids",
            )
        if unit.status != SerialStatus.IN_STOCK.value:
            raise ValidationError(
                f"Serial {unit.serial_number} is {unit.status}, not in_stock",
                field="serial_ids",
            )
        if unit.current_location_id != location_id:
            raise ValidationError(
                f"Serial {unit.serial_number} is not at location {location_id}",
                field="serial_ids",
            )
        return unit

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, serial_id: int) -> SerialUnit:
        unit = self.session.execute(
            select(SerialUnit)
            .where(SerialUnit.id == serial_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if unit is None:
            raise SerialUnitNotFoundError(serial_id)
        return unit

    def _record_movement(
        self,
        unit: SerialUnit,
        *,
        movement_type: str,
        from_location_id: int | None,
        to_location_id: int | None,
        from_status: str | None,
        reference_type: str,
        reference_id: str,
        actor_id: int | None,
        moved_at,
    ) -> SerialMovement:
        if not unit.id or unit.id <= 0:
            raise ValidationError(
                "Serial movement requires a persisted serial unit",
                field="serial_number_id",
            )
        movement = SerialMovement(
            serial_number_id=unit.id,
            movement_type=movement_type,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            from_status=from_status,
            to_status=unit.status,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            moved_at=moved_at,
        )
        self.session.add(movement)
        self.session.flush()
        return movement

