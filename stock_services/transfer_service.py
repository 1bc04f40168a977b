"""
stock_services.transfer_service -- Inter-location transfer state machine.

Responsibility:
    Creates transfers and drives them through TRANSFER_WORKFLOW, issuing the
    stock movements each edge carries: the source deduction at ``sent``, the
    destination receipt at ``completed`` and the compensating reversal when
    a dispatched transfer is cancelled.

Architecture position:
    Services -- orchestration over kernel services.  Quantity changes go
    through BalanceStore, serial changes through SerialRegistry.

Invariants enforced:
    - One step at a time.  A target that is not the single next state (or
      ``cancelled``) raises InvalidTransitionError.
    - The header row is locked for the whole transition, and the transition
      runs in one savepoint: if any item fails at ``sent`` no item is
      deducted and the status does not move.
    - stock_deducted is set in the same savepoint as the transfer_out
      movements; stock_received likewise for transfer_in.
    - A discrepancy between sent and received quantities is flagged, never
      reconciled at the source.
    - Every transition appends one TransferEvent.

Failure modes:
    - ValidationError: bad locations, quantities, serial references, or a
      missing receipt under the ``require_receipt`` policy.
    - InsufficientStockError: ``checked`` guard or ``sent`` deduction.
    - InvalidTransitionError: skipped step, terminal state, or cancellation
      after dispatch without compensation.
    - TransferNotFoundError.

Audit relevance:
    Logs ``transfer_created``, ``transfer_transition_completed``,
    ``transfer_receipt_recorded`` and ``transfer_receipt_defaulted`` (WARNING)
    whenever completion falls back to the sent quantity.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_config.schema import ReceiptFallback
from stock_kernel.db.types import to_decimal, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.values import MovementType, SerialStatus, coerce_enum
from stock_kernel.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    LocationNotFoundError,
    TransferNotFoundError,
    ValidationError,
    VariationNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.catalog import Location, ProductVariation
from stock_kernel.models.transfer import (
    Transfer,
    TransferEvent,
    TransferItem,
    TransferItemSerial,
)
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.base import BaseService
from stock_kernel.services.serial_registry import SerialRegistry
from stock_services.transfer_workflow import (
    DEDUCTED_STATES,
    RECEIVING_STATES,
    TRANSFER_WORKFLOW,
    TransferStatus,
    next_status,
)

logger = get_logger("services.transfer")

TRANSFER_REFERENCE = "transfer"
CANCELLATION_REFERENCE = "transfer_cancellation"


@dataclass(frozen=True)
class TransferItemInput:
    """One line of a transfer request."""

    variation_id: int
    quantity: Decimal
    serial_ids: tuple[int, ...] = ()
    unit_cost: Decimal | None = None

    @classmethod
    def coerce(cls, value: Any) -> TransferItemInput:
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            unknown = set(value) - {"variation_id", "quantity", "serial_ids", "unit_cost"}
            if unknown:
                raise ValidationError(
                    f"Unknown transfer item field(s): {', '.join(sorted(unknown))}",
                    field="items",
                )
            if "variation_id" not in value or "quantity" not in value:
                raise ValidationError(
                    "Transfer items need variation_id and quantity", field="items"
                )
            return cls(
                variation_id=value["variation_id"],
                quantity=value["quantity"],
                serial_ids=tuple(value.get("serial_ids") or ()),
                unit_cost=value.get("unit_cost"),
            )
        raise ValidationError(f"Cannot read transfer item {value!r}", field="items")


@dataclass(frozen=True)
class TransferItemView:
    id: int
    product_id: int
    variation_id: int
    quantity: Decimal
    received_quantity: Decimal | None
    received_quantity_defaulted: bool
    has_discrepancy: bool
    unit_cost: Decimal | None
    serial_ids: tuple[int, ...] = ()
    received_serial_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class TransferView:
    id: int
    business_id: int
    transfer_number: str | None
    from_location_id: int
    to_location_id: int
    status: str
    stock_deducted: bool
    stock_received: bool
    notes: str | None
    created_by: int | None
    created_at: datetime | None
    items: tuple[TransferItemView, ...] = field(default_factory=tuple)


def transfer_to_view(transfer: Transfer) -> TransferView:
    return TransferView(
        id=transfer.id,
        business_id=transfer.business_id,
        transfer_number=transfer.transfer_number,
        from_location_id=transfer.from_location_id,
        to_location_id=transfer.to_location_id,
        status=transfer.status,
        stock_deducted=transfer.stock_deducted,
        stock_received=transfer.stock_received,
        notes=transfer.notes,
        created_by=transfer.created_by,
        created_at=transfer.created_at,
        items=tuple(
            TransferItemView(
                id=item.id,
                product_id=item.product_id,
                variation_id=item.variation_id,
                quantity=item.quantity,
                received_quantity=item.received_quantity,
                received_quantity_defaulted=item.received_quantity_defaulted,
                has_discrepancy=item.has_discrepancy,
                unit_cost=item.unit_cost,
                serial_ids=tuple(s.serial_unit_id for s in item.serials),
                received_serial_ids=tuple(s.serial_unit_id for s in item.serials if s.received),
            )
            for item in transfer.items
        ),
    )


class TransferService(BaseService):
    """
    Transfer state machine.

    Contract:
        ``transition`` is the only way to change a transfer's status.
        Callers commit; this service flushes inside a savepoint.

    Guarantees:
        - Movements reference ("transfer", transfer.id) and are idempotent,
          so a retried transition never double-deducts.
        - Completion without a recorded receipt follows ``receipt_fallback``
          and is always logged and noted on the movement.

    Non-goals:
        - Reconciling a receipt discrepancy.  That takes an explicit
          adjustment at the location that lost or gained stock.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        balance_store: BalanceStore | None = None,
        serial_registry: SerialRegistry | None = None,
        valuation=None,
        receipt_fallback: ReceiptFallback | str = ReceiptFallback.SENT_QUANTITY,
    ):
        super().__init__(session, clock)
        self.balances = balance_store or BalanceStore(session, self.clock)
        self.serials = serial_registry or SerialRegistry(session, self.clock)
        # Optional ValuationService used to stamp the source cost on dispatch
        self.valuation = valuation
        self.receipt_fallback = ReceiptFallback(receipt_fallback)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_transfer(
        self,
        business_id: int,
        from_location_id: int,
        to_location_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        notes: str | None = None,
        transfer_number: str | None = None,
    ) -> Transfer:
        """Validate and persist a ``draft`` transfer."""
        source = self._location(from_location_id)
        destination = self._location(to_location_id)
        if from_location_id == to_location_id:
            raise ValidationError(
                "Source and destination locations must differ", field="to_location_id"
            )
        for location in (source, destination):
            if location.business_id != business_id:
                raise ValidationError(
                    f"Location {location.id} does not belong to business {business_id}",
                    field="business_id",
                )
            if not location.is_active:
                raise ValidationError(f"Location {location.id} is inactive", field="location_id")

        inputs = [TransferItemInput.coerce(i) for i in items]
        if not inputs:
            raise ValidationError("A transfer needs at least one item", field="items")

        seen_variations: set[int] = set()
        seen_serials: set[int] = set()
        prepared = []
        for item in inputs:
            if item.variation_id in seen_variations:
                raise ValidationError(
                    f"Variation {item.variation_id} appears more than once", field="items"
                )
            seen_variations.add(item.variation_id)

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
                raise ValidationError("Transfer quantity must be positive", field="quantity")
            unit_cost = to_decimal(item.unit_cost, "unit_cost") if item.unit_cost is not None else None
            self._validate_serials(variation, quantity, item.serial_ids, from_location_id, seen_serials)
            prepared.append((variation, quantity, unit_cost, item.serial_ids))

        transfer = Transfer(
            business_id=business_id,
            transfer_number=transfer_number,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            status=TransferStatus.DRAFT.value,
            stock_deducted=False,
            stock_received=False,
            notes=notes,
            created_by=actor_id,
        )
        for variation, quantity, unit_cost, serial_ids in prepared:
            transfer.items.append(
                TransferItem(
                    product_id=variation.product_id,
                    variation_id=variation.id,
                    quantity=quantity,
                    unit_cost=unit_cost,
                    serials=[TransferItemSerial(serial_unit_id=s) for s in serial_ids],
                )
            )
        self.session.add(transfer)
        self.session.flush()
        if transfer.transfer_number is None:
            transfer.transfer_number = f"TR-{transfer.id:06d}"
        self._record_event(transfer, None, TransferStatus.DRAFT.value, "create", actor_id, notes)

        logger.info(
            "transfer_created",
            extra={
                "transfer_id": transfer.id,
                "business_id": business_id,
                "from_location_id": from_location_id,
                "to_location_id": to_location_id,
                "item_count": len(prepared),
            },
        )
        return transfer

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        transfer_id: int,
        target_state: str,
        payload: Mapping[str, Any] | None = None,
        actor_id: int | None = None,
    ) -> Transfer:
        """
        Move a transfer one step, applying the step's stock effects.

        Payload keys:
            received: {item_id: qty} recorded before ``verified``.
            received_serials: {item_id: [serial_id]} recorded with them.
            compensate: True to cancel a dispatched transfer.
            notes: stored on the TransferEvent.
        """
        payload = dict(payload or {})
        target = coerce_enum(TransferStatus, target_state, "target_state")

        with LogContext.bind(transfer_id=transfer_id):
            transfer = self._lock(transfer_id)
            current = TransferStatus(transfer.status)
            edge = TRANSFER_WORKFLOW.find(current.value, target.value)
            if edge is None:
                expected = next_status(current)
                reason = (
                    f"{current.value} is terminal"
                    if current.value in TRANSFER_WORKFLOW.terminal_states
                    else f"next state is {expected.value}" if expected else None
                )
                logger.warning(
                    "transfer_transition_rejected",
                    extra={"from_status": current.value, "to_status": target.value},
                )
                raise InvalidTransitionError("Transfer", transfer_id, current.value, target.value, reason)

            compensate = bool(payload.get("compensate"))
            if target is TransferStatus.CANCELLED and current in DEDUCTED_STATES and not compensate:
                raise InvalidTransitionError(
                    "Transfer",
                    transfer_id,
                    current.value,
                    target.value,
                    "stock already left the source; cancel with compensate=True",
                )

            with self.session.begin_nested():
                if target is TransferStatus.CHECKED:
                    self._check_availability(transfer)
                elif target is TransferStatus.SENT:
                    self._send(transfer, actor_id)
                elif target is TransferStatus.VERIFIED:
                    self._apply_receipt_payload(transfer, payload, actor_id)
                elif target is TransferStatus.COMPLETED:
                    self._complete(transfer, actor_id)
                elif target is TransferStatus.CANCELLED and transfer.stock_deducted:
                    self._compensate(transfer, actor_id)

                transfer.status = target.value
                self.session.flush()
                self._record_event(
                    transfer, current.value, target.value, edge.action, actor_id, payload.get("notes")
                )

            logger.info(
                "transfer_transition_completed",
                extra={
                    "from_status": current.value,
                    "to_status": target.value,
                    "action": edge.action,
                    "moves_stock": edge.moves_stock,
                },
            )
            return transfer

    def record_receipt(
        self,
        transfer_id: int,
        item_id: int,
        received_quantity,
        serial_ids: Iterable[int] | None = None,
        actor_id: int | None = None,
    ) -> TransferItem:
        """Record what arrived for one item while the transfer is being checked in."""
        with LogContext.bind(transfer_id=transfer_id):
            transfer = self._lock(transfer_id)
            status = TransferStatus(transfer.status)
            if status not in RECEIVING_STATES:
                raise InvalidTransitionError(
                    "Transfer",
                    transfer_id,
                    status.value,
                    status.value,
                    "receipts can only be recorded while arrived or verifying",
                )
            item = self._item(transfer, item_id)
            self._set_receipt(item, received_quantity, serial_ids)
            self.session.flush()
            logger.info(
                "transfer_receipt_recorded",
                extra={
                    "item_id": item.id,
                    "quantity": item.quantity,
                    "received_quantity": item.received_quantity,
                    "has_discrepancy": item.has_discrepancy,
                    "actor_id": actor_id,
                },
            )
            return item

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transfer_id: int) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if transfer is None:
            raise TransferNotFoundError(transfer_id)
        return transfer

    def events(self, transfer_id: int) -> list[TransferEvent]:
        return list(
            self.session.scalars(
                select(TransferEvent)
                .where(TransferEvent.transfer_id == transfer_id)
                .order_by(TransferEvent.id)
            )
        )

    # ------------------------------------------------------------------
    # Edge effects
    # ------------------------------------------------------------------

    def _check_availability(self, transfer: Transfer) -> None:
        for item in transfer.items:
            current = self.balances.get_balance(item.variation_id, transfer.from_location_id)
            if current < item.quantity:
                logger.warning(
                    "transfer_check_failed",
                    extra={
                        "variation_id": item.variation_id,
                        "location_id": transfer.from_location_id,
                        "current": current,
                        "requested": item.quantity,
                    },
                )
                raise InsufficientStockError(
                    item.variation_id, transfer.from_location_id, current=current, requested=item.quantity
                )
            for link in item.serials:
                self.serials.require_available(
                    link.serial_unit_id, item.variation_id, transfer.from_location_id
                )

    def _send(self, transfer: Transfer, actor_id: int | None) -> None:
        for item in transfer.items:
            if item.unit_cost is None and self.valuation is not None:
                item.unit_cost = self.valuation.current_unit_cost(
                    item.variation_id, transfer.from_location_id
                )
            self.balances.apply_delta(
                item.variation_id,
                transfer.from_location_id,
                -item.quantity,
                MovementType.TRANSFER_OUT,
                TRANSFER_REFERENCE,
                transfer.id,
                actor_id,
                unit_cost=item.unit_cost,
                notes=f"Transfer {transfer.transfer_number or transfer.id} dispatched",
            )
            for link in item.serials:
                self.serials.require_available(
                    link.serial_unit_id, item.variation_id, transfer.from_location_id
                )
                self.serials.transition(
                    link.serial_unit_id,
                    SerialStatus.IN_TRANSIT,
                    TRANSFER_REFERENCE,
                    transfer.id,
                    actor_id,
                    to_location_id=transfer.to_location_id,
                )
        transfer.stock_deducted = True

    def _apply_receipt_payload(
        self,
        transfer: Transfer,
        payload: Mapping[str, Any],
        actor_id: int | None,
    ) -> None:
        # JSON payloads arrive with string keys
        received = {int(k): v for k, v in (payload.get("received") or {}).items()}
        received_serials = {
            int(k): v for k, v in (payload.get("received_serials") or {}).items()
        }
        for item_id in sorted(set(received) | set(received_serials)):
            item = self._item(transfer, item_id)
            qty = received.get(item_id, item.received_quantity)
            if qty is None:
                qty = len(received_serials[item_id])
            self._set_receipt(item, qty, received_serials.get(item_id))
            logger.info(
                "transfer_receipt_recorded",
                extra={
                    "item_id": item.id,
                    "quantity": item.quantity,
                    "received_quantity": item.received_quantity,
                    "has_discrepancy": item.has_discrepancy,
                    "actor_id": actor_id,
                },
            )

    def _complete(self, transfer: Transfer, actor_id: int | None) -> None:
        for item in transfer.items:
            if item.received_quantity is not None and item.received_quantity != 0:
                quantity_in = item.received_quantity
                notes = f"Transfer {transfer.transfer_number or transfer.id} received"
            elif self.receipt_fallback is ReceiptFallback.REQUIRE_RECEIPT:
                raise ValidationError(
                    f"Item {item.id} has no recorded receipt", field="received_quantity"
                )
            else:
                quantity_in = item.quantity
                item.received_quantity_defaulted = True
                notes = (
                    f"Transfer {transfer.transfer_number or transfer.id} received; no receipt "
                    f"recorded, defaulted to sent quantity {item.quantity}"
                )
                logger.warning(
                    "transfer_receipt_defaulted",
                    extra={
                        "item_id": item.id,
                        "variation_id": item.variation_id,
                        "quantity": item.quantity,
                        "recorded_received_quantity": item.received_quantity,
                    },
                )

            item.has_discrepancy = quantity_in != item.quantity
            self.balances.apply_delta(
                item.variation_id,
                transfer.to_location_id,
                quantity_in,
                MovementType.TRANSFER_IN,
                TRANSFER_REFERENCE,
                transfer.id,
                actor_id,
                unit_cost=item.unit_cost,
                notes=notes,
            )
            self._receive_serials(transfer, item, quantity_in, actor_id)
        transfer.stock_received = True

    def _receive_serials(
        self,
        transfer: Transfer,
        item: TransferItem,
        quantity_in: Decimal,
        actor_id: int | None,
    ) -> None:
        if not item.serials:
            return
        marked = [link for link in item.serials if link.received]
        if marked:
            arriving = marked
        elif quantity_in == item.quantity:
            arriving = list(item.serials)
            for link in arriving:
                link.received = True
        else:
            raise ValidationError(
                f"Item {item.id} received {quantity_in} of {item.quantity} with no serials confirmed",
                field="received_serials",
            )
        for link in arriving:
            self.serials.transition(
                link.serial_unit_id,
                SerialStatus.IN_STOCK,
                TRANSFER_REFERENCE,
                transfer.id,
                actor_id,
                to_location_id=transfer.to_location_id,
            )

    def _compensate(self, transfer: Transfer, actor_id: int | None) -> None:
        for item in transfer.items:
            self.balances.apply_delta(
                item.variation_id,
                transfer.from_location_id,
                item.quantity,
                MovementType.TRANSFER_IN,
                CANCELLATION_REFERENCE,
                transfer.id,
                actor_id,
                unit_cost=item.unit_cost,
                notes=f"Reversal of transfer {transfer.transfer_number or transfer.id} on cancellation",
            )
            for link in item.serials:
                unit = self.serials.get(link.serial_unit_id)
                if unit.status == SerialStatus.IN_TRANSIT.value:
                    self.serials.transition(
                        link.serial_unit_id,
                        SerialStatus.IN_STOCK,
                        CANCELLATION_REFERENCE,
                        transfer.id,
                        actor_id,
                        to_location_id=transfer.from_location_id,
                    )
        logger.warning(
            "transfer_compensated",
            extra={"item_count": len(transfer.items), "location_id": transfer.from_location_id},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_receipt(self, item: TransferItem, received_quantity, serial_ids) -> None:
        qty = to_quantity(received_quantity, "received_quantity")
        if qty < 0:
            raise ValidationError("Received quantity cannot be negative", field="received_quantity")
        if qty > item.quantity:
            raise ValidationError(
                f"Received quantity {qty} exceeds sent quantity {item.quantity}",
                field="received_quantity",
            )
        if serial_ids is not None:
            wanted = {int(s) for s in serial_ids}
            known = {link.serial_unit_id for link in item.serials}
            stray = wanted - known
            if stray:
                raise ValidationError(
                    f"Serial(s) {sorted(stray)} were not sent with item {item.id}",
                    field="received_serials",
                )
            if Decimal(len(wanted)) != qty:
                raise ValidationError(
                    f"{len(wanted)} serial(s) received but quantity is {qty}",
                    field="received_serials",
                )
            for link in item.serials:
                link.received = link.serial_unit_id in wanted
        elif item.serials:
            if qty != item.quantity:
                raise ValidationError(
                    f"Item {item.id} is serialized: a receipt of {qty} of {item.quantity} "
                    f"must name the serials that arrived",
                    field="received_serials",
                )
            for link in item.serials:
                link.received = True
        item.received_quantity = qty
        item.has_discrepancy = qty != item.quantity

    def _validate_serials(
        self,
        variation: ProductVariation,
        quantity: Decimal,
        serial_ids: tuple[int, ...],
        location_id: int,
        seen: set[int],
    ) -> None:
        if not variation.product.is_serialized:
            if serial_ids:
                raise ValidationError(
                    f"Variation {variation.id} is not serialized; serial_ids not allowed",
                    field="serial_ids",
                )
            return
        if Decimal(len(serial_ids)) != quantity:
            raise ValidationError(
                f"Variation {variation.id} is serialized: {quantity} unit(s) need "
                f"{quantity} serial(s), got {len(serial_ids)}",
                field="serial_ids",
            )
        for serial_id in serial_ids:
            if serial_id in seen:
                raise ValidationError(f"Serial {serial_id} listed twice", field="serial_ids")
            seen.add(serial_id)
            self.serials.require_available(serial_id, variation.id, location_id)

    def _lock(self, transfer_id: int) -> Transfer:
        transfer = self.session.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if transfer is None:
            raise TransferNotFoundError(transfer_id)
        return transfer

    def _item(self, transfer: Transfer, item_id: int) -> TransferItem:
        for item in transfer.items:
            if item.id == item_id:
                return item
        raise ValidationError(
            f"Item {item_id} does not belong to transfer {transfer.id}", field="item_id"
        )

    def _location(self, location_id: int) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        return location

    def _record_event(
        self,
        transfer: Transfer,
        from_status: str | None,
        to_status: str,
        action: str,
        actor_id: int | None,
        notes: str | None,
    ) -> TransferEvent:
        event = TransferEvent(
            transfer_id=transfer.id,
            from_status=from_status,
            to_status=to_status,
            action=action,
            actor_id=actor_id,
            occurred_at=self.clock.now(),
            notes=notes,
        )
        self.session.add(event)
        self.session.flush()
        return event
