"""
stock_services.return_service -- Customer and supplier return processing.

Responsibility:
    Records returns as ``pending`` documents and, on approval, applies their
    stock and serial effects in one savepoint.

Architecture position:
    Services -- orchestration over BalanceStore and SerialRegistry.

Invariants enforced:
    - Status moves pending -> approved | rejected exactly once.
    - Customer returns: resellable items come back into stock; damaged and
      defective items write a zero-delta ``customer_return`` movement so the
      return is visible in the ledger without inflating sellable stock.
    - Supplier returns always deduct, whatever the condition.  Their serials
      go to ``warranty_return`` and leave the system.
    - Movements reference the return *item*, so two lines of the same
      variation never collide on the idempotency key.

Failure modes:
    - ValidationError: bad item, condition, serial reference, or a
      warranty_claim serial outside its warranty window.  Serials are
      checked again at approval, so a unit sold or moved after the return
      was created blocks the approval.
    - InsufficientStockError: supplier return larger than the stock on hand.
    - InvalidTransitionError: approving or rejecting a settled return.
    - ReturnNotFoundError.

Audit relevance:
    Logs ``customer_return_created`` / ``supplier_return_created``,
    ``return_approved`` and ``return_rejected``.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, to_decimal, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.values import ItemCondition, MovementType, SerialStatus, coerce_enum
from stock_kernel.exceptions import (
    InvalidTransitionError,
    LocationNotFoundError,
    ReturnNotFoundError,
    ValidationError,
    VariationNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.catalog import Location, ProductVariation
from stock_kernel.models.returns import (
    CustomerReturn,
    CustomerReturnItem,
    SupplierReturn,
    SupplierReturnItem,
)
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.base import BaseService
from stock_kernel.services.serial_registry import SerialRegistry

logger = get_logger("services.returns")


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CUSTOMER_CONDITIONS = frozenset(
    {ItemCondition.RESELLABLE, ItemCondition.DAMAGED, ItemCondition.DEFECTIVE}
)
SUPPLIER_CONDITIONS = frozenset(
    {ItemCondition.DAMAGED, ItemCondition.DEFECTIVE, ItemCondition.WARRANTY_CLAIM}
)

# Where a sold serial lands when the customer brings it back
CUSTOMER_SERIAL_STATUS = {
    ItemCondition.RESELLABLE: SerialStatus.RETURNED,
    ItemCondition.DAMAGED: SerialStatus.DAMAGED,
    ItemCondition.DEFECTIVE: SerialStatus.DEFECTIVE,
}

# Serial states a unit may be handed back to the supplier from
SUPPLIER_RETURNABLE_SERIALS = frozenset(
    {
        SerialStatus.IN_STOCK.value,
        SerialStatus.RETURNED.value,
        SerialStatus.DAMAGED.value,
        SerialStatus.DEFECTIVE.value,
    }
)


@dataclass(frozen=True)
class ReturnItemInput:
    variation_id: int
    quantity: Decimal
    condition: str
    unit_cost: Decimal | None = None
    serial_ids: tuple[int, ...] = ()

    @classmethod
    def coerce(cls, value: Any) -> ReturnItemInput:
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            missing = {"variation_id", "quantity", "condition"} - set(value)
            if missing:
                raise ValidationError(
                    f"Return item missing field(s): {', '.join(sorted(missing))}",
                    field="items",
                )
            return cls(
                variation_id=value["variation_id"],
                quantity=value["quantity"],
                condition=value["condition"],
                unit_cost=value.get("unit_cost"),
                serial_ids=tuple(value.get("serial_ids") or ()),
            )
        raise ValidationError(f"Cannot read return item {value!r}", field="items")


@dataclass(frozen=True)
class ReturnItemView:
    id: int
    variation_id: int
    quantity: Decimal
    condition: str
    unit_cost: Decimal | None
    serial_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class ReturnView:
    id: int
    kind: str
    business_id: int
    location_id: int
    status: str
    supplier_id: int | None
    approved_by: int | None
    rejection_reason: str | None
    items: tuple[ReturnItemView, ...] = ()


def return_to_view(header: CustomerReturn | SupplierReturn) -> ReturnView:
    return ReturnView(
        id=header.id,
        kind="supplier" if isinstance(header, SupplierReturn) else "customer",
        business_id=header.business_id,
        location_id=header.location_id,
        status=header.status,
        supplier_id=getattr(header, "supplier_id", None),
        approved_by=header.approved_by,
        rejection_reason=header.rejection_reason,
        items=tuple(
            ReturnItemView(
                id=item.id,
                variation_id=item.variation_id,
                quantity=item.quantity,
                condition=item.condition,
                unit_cost=item.unit_cost,
                serial_ids=tuple(item.serial_ids or ()),
            )
            for item in header.items
        ),
    )


class _ReturnProcessor(BaseService):
    """Shared create / settle plumbing for both return directions."""

    header_model: type
    entity_type: str
    allowed_conditions: frozenset[ItemCondition]

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        balance_store: BalanceStore | None = None,
        serial_registry: SerialRegistry | None = None,
    ):
        super().__init__(session, clock)
        self.balances = balance_store or BalanceStore(session, self.clock)
        self.serials = serial_registry or SerialRegistry(session, self.clock)

    def get(self, return_id: int):
        header = self.session.get(self.header_model, return_id)
        if header is None:
            raise ReturnNotFoundError(return_id)
        return header

    def reject(self, return_id: int, actor_id: int | None, reason: str):
        if not reason or not str(reason).strip():
            raise ValidationError("A rejection reason is required", field="reason")
        header = self._lock_pending(return_id, ReturnStatus.REJECTED)
        header.status = ReturnStatus.REJECTED.value
        header.rejection_reason = str(reason).strip()
        header.approved_by = actor_id
        header.approved_at = self.clock.now()
        self.session.flush()
        logger.info(
            "return_rejected",
            extra={"entity_type": self.entity_type, "return_id": return_id, "actor_id": actor_id},
        )
        return header

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_pending(self, return_id: int, target: ReturnStatus):
        header = self.session.execute(
            select(self.header_model)
            .where(self.header_model.id == return_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if header is None:
            raise ReturnNotFoundError(return_id)
        if header.status != ReturnStatus.PENDING.value:
            raise InvalidTransitionError(
                self.entity_type, return_id, header.status, target.value, "return already settled"
            )
        return header

    def _location(self, location_id: int, business_id: int) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        if location.business_id != business_id:
            raise ValidationError(
                f"Location {location_id} does not belong to business {business_id}",
                field="location_id",
            )
        return location

    def _prepare_items(self, items: Iterable[Any], business_id: int, location_id: int) -> list:
        inputs = [ReturnItemInput.coerce(i) for i in items]
        if not inputs:
            raise ValidationError("A return needs at least one item", field="items")
        seen_serials: set[int] = set()
        prepared = []
        for item in inputs:
            variation = self.session.get(ProductVariation, item.variation_id)
            if variation is None:
                raise VariationNotFoundError(item.variation_id)
            if variation.product.business_id != business_id:
                raise ValidationError(
                    f"Variation {item.variation_id} does not belong to business {business_id}",
                    field="items",
                )
            quantity = to_quantity(item.quantity, "quantity")
            if quantity <= 0:
                raise ValidationError("Return quantity must be positive", field="quantity")
            condition = coerce_enum(ItemCondition, item.condition, "condition")
            if condition not in self.allowed_conditions:
                allowed = ", ".join(sorted(c.value for c in self.allowed_conditions))
                raise ValidationError(
                    f"Condition {condition.value!r} not allowed here; expected one of: {allowed}",
                    field="condition",
                )
            unit_cost = to_decimal(item.unit_cost, "unit_cost") if item.unit_cost is not None else None
            if unit_cost is not None and unit_cost < 0:
                raise ValidationError("unit_cost cannot be negative", field="unit_cost")

            serial_ids = tuple(int(s) for s in item.serial_ids)
            if variation.product.is_serialized:
                if Decimal(len(serial_ids)) != quantity:
                    raise ValidationError(
                        f"Variation {variation.id} is serialized: {quantity} unit(s) need "
                        f"{quantity} serial(s), got {len(serial_ids)}",
                        field="serial_ids",
                    )
            elif serial_ids:
                raise ValidationError(
                    f"Variation {variation.id} is not serialized; serial_ids not allowed",
                    field="serial_ids",
                )
            for serial_id in serial_ids:
                if serial_id in seen_serials:
                    raise ValidationError(f"Serial {serial_id} listed twice", field="serial_ids")
                seen_serials.add(serial_id)
                self._check_serial(serial_id, variation.id, location_id)

            prepared.append((variation, quantity, condition, unit_cost, serial_ids))
        return prepared

    def _recheck_serials(self, header) -> None:
        # A unit can change hands between create and approve
        for item in header.items:
            for serial_id in item.serial_ids or ():
                self._check_serial(serial_id, item.variation_id, header.location_id)

    @abstractmethod
    def _check_serial(self, serial_id: int, variation_id: int, location_id: int) -> None:
        """Raise ValidationError unless the unit may be returned in this direction."""


class CustomerReturnProcessor(_ReturnProcessor):
    """
    Goods coming back from a buyer.

    Contract:
        ``create`` validates and stores a pending return; ``approve`` applies
        it.  Nothing touches stock before approval.

    Guarantees:
        - One ``customer_return`` movement per item, referenced by the item.
        - Serials move sold -> returned | damaged | defective and are placed
          at the return location.
    """

    header_model = CustomerReturn
    entity_type = "CustomerReturn"
    allowed_conditions = CUSTOMER_CONDITIONS

    def create(
        self,
        business_id: int,
        location_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        sale_reference: str | None = None,
    ) -> CustomerReturn:
        self._location(location_id, business_id)
        prepared = self._prepare_items(items, business_id, location_id)

        header = CustomerReturn(
            business_id=business_id,
            location_id=location_id,
            sale_reference=sale_reference,
            status=ReturnStatus.PENDING.value,
            created_by=actor_id,
        )
        for variation, quantity, condition, unit_cost, serial_ids in prepared:
            header.items.append(
                CustomerReturnItem(
                    product_id=variation.product_id,
                    variation_id=variation.id,
                    quantity=quantity,
                    condition=condition.value,
                    unit_cost=unit_cost,
                    serial_ids=list(serial_ids),
                )
            )
        self.session.add(header)
        self.session.flush()
        logger.info(
            "customer_return_created",
            extra={
                "return_id": header.id,
                "location_id": location_id,
                "item_count": len(prepared),
                "sale_reference": sale_reference,
            },
        )
        return header

    def approve(self, return_id: int, actor_id: int | None = None) -> CustomerReturn:
        with LogContext.bind(reference=f"customer_return:{return_id}"):
            header = self._lock_pending(return_id, ReturnStatus.APPROVED)
            restocked = ZERO
            with self.session.begin_nested():
                self._recheck_serials(header)
                for item in header.items:
                    condition = ItemCondition(item.condition)
                    resellable = condition is ItemCondition.RESELLABLE
                    delta = item.quantity if resellable else ZERO
                    self.balances.apply_delta(
                        item.variation_id,
                        header.location_id,
                        delta,
                        MovementType.CUSTOMER_RETURN,
                        "customer_return_item",
                        item.id,
                        actor_id,
                        unit_cost=item.unit_cost,
                        notes=(
                            f"Customer return {header.id}"
                            if resellable
                            else f"Customer return {header.id}: {item.quantity} {condition.value}, not restocked"
                        ),
                    )
                    restocked += delta
                    for serial_id in item.serial_ids:
                        self.serials.transition(
                            serial_id,
                            CUSTOMER_SERIAL_STATUS[condition],
                            "customer_return_item",
                            item.id,
                            actor_id,
                            to_location_id=header.location_id,
                            condition=condition.value,
                        )
                header.status = ReturnStatus.APPROVED.value
                header.approved_by = actor_id
                header.approved_at = self.clock.now()
                self.session.flush()

            logger.info(
                "return_approved",
                extra={
                    "entity_type": self.entity_type,
                    "return_id": return_id,
                    "location_id": header.location_id,
                    "restocked_quantity": restocked,
                    "actor_id": actor_id,
                },
            )
            return header

    def _check_serial(self, serial_id: int, variation_id: int, location_id: int) -> None:
        unit = self.serials.get(serial_id)
        if unit.variation_id != variation_id:
            raise ValidationError(
                f"Serial {unit.serial_number} belongs to variation {unit.variation_id}, "
                f"not {variation_id}",
                field="serial_ids",
            )
        if unit.status != SerialStatus.SOLD.value:
            raise ValidationError(
                f"Serial {unit.serial_number} is {unit.status}; only sold units can be returned",
                field="serial_ids",
            )


class SupplierReturnProcessor(_ReturnProcessor):
    """
    Goods going back to a vendor.

    Guarantees:
        - One negative ``supplier_return`` movement per item.
        - Serials end in ``warranty_return``.  For ``warranty_claim`` items
          every serial must be under warranty on the approval date.
    """

    header_model = SupplierReturn
    entity_type = "SupplierReturn"
    allowed_conditions = SUPPLIER_CONDITIONS

    def create(
        self,
        business_id: int,
        location_id: int,
        supplier_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        warranty_claim_reference: str | None = None,
    ) -> SupplierReturn:
        self._location(location_id, business_id)
        if supplier_id is None:
            raise ValidationError("supplier_id is required", field="supplier_id")
        prepared = self._prepare_items(items, business_id, location_id)

        header = SupplierReturn(
            business_id=business_id,
            location_id=location_id,
            supplier_id=supplier_id,
            warranty_claim_reference=warranty_claim_reference,
            status=ReturnStatus.PENDING.value,
            created_by=actor_id,
        )
        for variation, quantity, condition, unit_cost, serial_ids in prepared:
            header.items.append(
                SupplierReturnItem(
                    product_id=variation.product_id,
                    variation_id=variation.id,
                    quantity=quantity,
                    condition=condition.value,
                    unit_cost=unit_cost,
                    serial_ids=list(serial_ids),
                )
            )
        self.session.add(header)
        self.session.flush()
        logger.info(
            "supplier_return_created",
            extra={
                "return_id": header.id,
                "location_id": location_id,
                "supplier_id": supplier_id,
                "item_count": len(prepared),
            },
        )
        return header

    def approve(self, return_id: int, actor_id: int | None = None) -> SupplierReturn:
        with LogContext.bind(reference=f"supplier_return:{return_id}"):
            header = self._lock_pending(return_id, ReturnStatus.APPROVED)
            today = self.clock.today()
            deducted = ZERO
            with self.session.begin_nested():
                self._recheck_serials(header)
                for item in header.items:
                    condition = ItemCondition(item.condition)
                    if condition is ItemCondition.WARRANTY_CLAIM:
                        for serial_id in item.serial_ids:
                            if not self.serials.is_under_warranty(serial_id, today):
                                raise ValidationError(
                                    f"Serial {serial_id} is not under warranty on {today}",
                                    field="serial_ids",
                                )
                    self.balances.apply_delta(
                        item.variation_id,
                        header.location_id,
                        -item.quantity,
                        MovementType.SUPPLIER_RETURN,
                        "supplier_return_item",
                        item.id,
                        actor_id,
                        unit_cost=item.unit_cost,
                        notes=f"Supplier return {header.id} ({condition.value}) to supplier {header.supplier_id}",
                    )
                    deducted += item.quantity
                    for serial_id in item.serial_ids:
                        self.serials.transition(
                            serial_id,
                            SerialStatus.WARRANTY_RETURN,
                            "supplier_return_item",
                            item.id,
                            actor_id,
                            condition=condition.value,
                        )
                header.status = ReturnStatus.APPROVED.value
                header.approved_by = actor_id
                header.approved_at = self.clock.now()
                self.session.flush()

            logger.info(
                "return_approved",
                extra={
                    "entity_type": self.entity_type,
                    "return_id": return_id,
                    "location_id": header.location_id,
                    "supplier_id": header.supplier_id,
                    "deducted_quantity": deducted,
                    "actor_id": actor_id,
                },
            )
            return header

    def _check_serial(self, serial_id: int, variation_id: int, location_id: int) -> None:
        unit = self.serials.get(serial_id)
        if unit.variation_id != variation_id:
            raise ValidationError(
                f"Serial {unit.serial_number} belongs to variation {unit.variation_id}, "
                f"not {variation_id}",
                field="serial_ids",
            )
        if unit.status not in SUPPLIER_RETURNABLE_SERIALS:
            raise ValidationError(
                f"Serial {unit.serial_number} is {unit.status} and cannot go back to the supplier",
                field="serial_ids",
            )
        if unit.current_location_id != location_id:
            raise ValidationError(
                f"Serial {unit.serial_number} is not at location {location_id}",
                field="serial_ids",
            )
