"""
SerialRegistry: registration, lifecycle transitions, warranty checks.

Test classes:
- TestRegister
- TestSerialNumberFormat
- TestTransitions: allowed and rejected edges, one movement per step
- TestArrival: in_transit units keep their location until they land
- TestWarranty
- TestRequireAvailable
"""

from datetime import date

import pytest

from stock_kernel.exceptions import (
    DuplicateSerialError,
    InvalidTransitionError,
    LocationNotFoundError,
    SerialUnitNotFoundError,
    ValidationError,
)


@pytest.fixture
def unit(serials, catalog):
    return serials.register("SN-0001", catalog.serialized_variation_id, catalog.warehouse_id)


class TestRegister:

    def test_registers_in_stock(self, serials, catalog, test_actor_id):
        unit = serials.register(
            "SN-1000", catalog.serialized_variation_id, catalog.warehouse_id, test_actor_id,
            supplier_id=12, purchase_cost="199.99",
        )

        view = serials.get(unit.id)
        assert view.status == "in_stock"
        assert view.current_location_id == catalog.warehouse_id
        assert view.product_id == catalog.serialized_product_id
        assert view.supplier_id == 12

        [movement] = serials.movements(unit.id)
        assert movement.serial_number_id == unit.id
        assert movement.from_status is None
        assert movement.to_status == "in_stock"
        assert movement.to_location_id == catalog.warehouse_id
        assert movement.actor_id == test_actor_id

    def test_duplicate_rejected(self, serials, catalog, unit):
        with pytest.raises(DuplicateSerialError) as exc_info:
            serials.register("SN-0001", catalog.serialized_variation_id, catalog.store_id)
        assert exc_info.value.code == "DUPLICATE_SERIAL"

    def test_surrounding_whitespace_is_stripped(self, serials, catalog, unit):
        with pytest.raises(DuplicateSerialError):
            serials.register("  SN-0001 ", catalog.serialized_variation_id, catalog.warehouse_id)
        assert serials.get_by_number(catalog.serialized_product_id, " SN-0001").id == unit.id

    def test_non_serialized_product_rejected(self, serials, catalog):
        with pytest.raises(ValidationError, match="not serialized"):
            serials.register("SN-2000", catalog.variation_id, catalog.warehouse_id)

    def test_unknown_location(self, serials, catalog):
        with pytest.raises(LocationNotFoundError):
            serials.register("SN-2001", catalog.serialized_variation_id, 999_999)

    def test_inverted_warranty_window(self, serials, catalog):
        with pytest.raises(ValidationError):
            serials.register(
                "SN-2002", catalog.serialized_variation_id, catalog.warehouse_id,
                warranty_start=date(2024, 6, 1), warranty_end=date(2024, 1, 1),
            )

    def test_available_at(self, serials, catalog, unit):
        serials.register("SN-0002", catalog.serialized_variation_id, catalog.store_id)
        ids = [u.id for u in serials.available_at(catalog.serialized_variation_id, catalog.warehouse_id)]
        assert ids == [unit.id]


class TestRegisterMany:

    def test_failures_do_not_block_the_rest(self, serials, catalog, unit, captured_logs):
        result = serials.register_many(
            ["SN-2001", "SN-0001", "x!", "SN-2002"],
            catalog.serialized_variation_id, catalog.warehouse_id,
            reference_type="grn", reference_id="GRN-5",
        )

        assert [v.serial_number for v in result.registered] == ["SN-2001", "SN-2002"]
        assert result.registered_count == 2
        assert [(f.serial_number, f.code) for f in result.failures] == [
            ("SN-0001", "DUPLICATE_SERIAL"),
            ("x!", "VALIDATION_ERROR"),
        ]
        for view in result.registered:
            assert serials.get(view.id).status == "in_stock"
            [movement] = serials.movements(view.id)
            assert (movement.reference_type, movement.reference_id) == ("grn", "GRN-5")

        [record] = [r for r in captured_logs() if r["message"] == "serials_bulk_registered"]
        assert record["registered_count"] == 2
        assert record["failure_count"] == 2

    def test_repeat_within_one_receipt(self, serials, catalog):
        result = serials.register_many(
            ["SN-3001", "SN-3001"], catalog.serialized_variation_id, catalog.warehouse_id
        )
        assert result.registered_count == 1
        assert result.failure_count == 1

    def test_unknown_location_fails_every_serial(self, serials, catalog):
        result = serials.register_many(["SN-4001", "SN-4002"], catalog.serialized_variation_id, 999_999)
        assert result.registered == ()
        assert {f.code for f in result.failures} == {LocationNotFoundError.code}


class TestSerialNumberFormat:

    @pytest.mark.parametrize("serial_number", ["AB", "has space", "slash/1", "", None, "x" * 192])
    def test_invalid(self, serials, catalog, serial_number):
        with pytest.raises(ValidationError) as exc_info:
            serials.register(serial_number, catalog.serialized_variation_id, catalog.warehouse_id)
        assert exc_info.value.field == "serial_number"

    @pytest.mark.parametrize("serial_number", ["ABC", "sn_under-score_9", "x" * 191])
    def test_valid(self, serials, catalog, serial_number):
        unit = serials.register(serial_number, catalog.serialized_variation_id, catalog.warehouse_id)
        assert unit.serial_number == serial_number


class TestTransitions:

    def test_sale_then_return_as_damaged(self, serials, unit):
        serials.transition(unit.id, "sold", "sale", "S-1")
        serials.transition(unit.id, "damaged", "customer_return", "R-1", condition="damaged")

        assert serials.get(unit.id).status == "damaged"
        history = serials.movements(unit.id)
        assert [(m.from_status, m.to_status) for m in history] == [
            (None, "in_stock"),
            ("in_stock", "sold"),
            ("sold", "damaged"),
        ]
        assert history[1].movement_type == "sale"

    def test_movement_type_override(self, serials, unit):
        serials.transition(unit.id, "sold", "pos", "P-1", movement_type="pos_sale")
        assert serials.movements(unit.id)[-1].movement_type == "pos_sale"

    @pytest.mark.parametrize("target", ["returned", "damaged", "defective"])
    def test_in_stock_cannot_skip_sale(self, serials, unit, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            serials.transition(unit.id, target, "customer_return", "R-1")
        assert exc_info.value.code == "INVALID_TRANSITION"
        assert serials.get(unit.id).status == "in_stock"
        assert len(serials.movements(unit.id)) == 1

    def test_warranty_return_from_any_state_and_terminal(self, serials, unit):
        serials.transition(unit.id, "sold", "sale", "S-1")
        serials.transition(unit.id, "warranty_return", "supplier_return_item", "1")

        with pytest.raises(InvalidTransitionError):
            serials.transition(unit.id, "in_stock", "adjustment", "A-1")
        with pytest.raises(InvalidTransitionError):
            serials.transition(unit.id, "warranty_return", "supplier_return_item", "2")

    def test_unknown_status(self, serials, unit):
        with pytest.raises(ValidationError):
            serials.transition(unit.id, "lost", "adjustment", "A-1")

    def test_reference_required(self, serials, unit):
        with pytest.raises(ValidationError):
            serials.transition(unit.id, "sold", "sale", " ")

    def test_unknown_unit(self, serials):
        with pytest.raises(SerialUnitNotFoundError):
            serials.transition(999_999, "sold", "sale", "S-1")

    def test_rejection_is_logged(self, serials, unit, captured_logs):
        with pytest.raises(InvalidTransitionError):
            serials.transition(unit.id, "returned", "customer_return", "R-1")
        assert any(r["message"] == "serial_transition_rejected" for r in captured_logs())


class TestArrival:

    def test_in_transit_keeps_source_location(self, serials, catalog, unit):
        serials.transition(unit.id, "in_transit", "transfer", "1", to_location_id=catalog.store_id)
        view = serials.get(unit.id)
        assert view.status == "in_transit"
        assert view.current_location_id == catalog.warehouse_id

    def test_arrival_requires_location(self, serials, unit):
        serials.transition(unit.id, "in_transit", "transfer", "1")
        with pytest.raises(ValidationError) as exc_info:
            serials.transition(unit.id, "in_stock", "transfer", "1")
        assert exc_info.value.field == "to_location_id"

    def test_arrival_moves_unit(self, serials, catalog, unit):
        serials.transition(unit.id, "in_transit", "transfer", "1")
        serials.transition(unit.id, "in_stock", "transfer", "1", to_location_id=catalog.store_id)

        view = serials.get(unit.id)
        assert view.current_location_id == catalog.store_id
        last = serials.movements(unit.id)[-1]
        assert last.from_location_id == catalog.warehouse_id
        assert last.to_location_id == catalog.store_id
        assert last.movement_type == "transfer_in"


class TestWarranty:

    @pytest.fixture
    def covered(self, serials, catalog):
        return serials.register(
            "SN-W-1", catalog.serialized_variation_id, catalog.warehouse_id,
            warranty_start=date(2023, 6, 1), warranty_end=date(2024, 6, 1),
        )

    def test_inside_window_uses_clock(self, serials, covered):
        assert serials.is_under_warranty(covered.id)

    @pytest.mark.parametrize(
        "as_of,expected",
        [
            (date(2023, 5, 31), False),
            (date(2023, 6, 1), True),
            (date(2024, 6, 1), True),
            (date(2024, 6, 2), False),
        ],
    )
    def test_boundaries(self, serials, covered, as_of, expected):
        assert serials.is_under_warranty(covered.id, as_of) is expected

    def test_no_warranty(self, serials, unit):
        assert serials.is_under_warranty(unit.id) is False


class TestRequireAvailable:

    def test_available(self, serials, catalog, unit):
        view = serials.require_available(unit.id, catalog.serialized_variation_id, catalog.warehouse_id)
        assert view.id == unit.id

    def test_wrong_location(self, serials, catalog, unit):
        with pytest.raises(ValidationError, match="not at location"):
            serials.require_available(unit.id, catalog.serialized_variation_id, catalog.store_id)

    def test_wrong_variation(self, serials, catalog, unit):
        with pytest.raises(ValidationError, match="belongs to variation"):
            serials.require_available(unit.id, catalog.variation_id, catalog.warehouse_id)

    def test_sold_unit(self, serials, catalog, unit):
        serials.transition(unit.id, "sold", "sale", "S-1")
        with pytest.raises(ValidationError, match="not in_stock"):
            serials.require_available(unit.id, catalog.serialized_variation_id, catalog.warehouse_id)
