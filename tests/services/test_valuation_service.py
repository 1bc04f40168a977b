"""
ValuationService: cost layers projected from the movement ledger.

Test classes:
- TestCostMethods: FIFO, LIFO and weighted average over the same movements
- TestIncrementalSync: watermark, rebuild equivalence
- TestUnvaluedQuantity: outbound with no layers, later filled by inbound
- TestValuationQuery
"""

from decimal import Decimal

import pytest

from stock_kernel.exceptions import ValidationError
from stock_services.valuation_service import ValuationService


@pytest.fixture
def valuation(session, deterministic_clock) -> ValuationService:
    return ValuationService(session, deterministic_clock)


@pytest.fixture
def two_receipts_one_sale(balances, catalog, stock_in):
    """10 @ 5 then 5 @ 8 received, 12 sold."""
    stock_in(10, unit_cost="5")
    stock_in(5, unit_cost="8")
    balances.apply_delta(catalog.variation_id, catalog.warehouse_id, -12, "sale", "sale", "S-1")


def _shape(layers):
    return [(layer.quantity, layer.unit_cost) for layer in layers]


class TestCostMethods:

    def test_fifo(self, valuation, catalog, two_receipts_one_sale):
        layers = valuation.layers(catalog.variation_id, catalog.warehouse_id, "fifo")

        assert _shape(layers) == [(Decimal("3"), Decimal("8"))]
        assert valuation.total_value(catalog.variation_id, catalog.warehouse_id, "fifo") == Decimal("24")
        assert valuation.current_unit_cost(catalog.variation_id, catalog.warehouse_id, "fifo") == Decimal("8")

    def test_lifo(self, valuation, catalog, two_receipts_one_sale):
        layers = valuation.layers(catalog.variation_id, catalog.warehouse_id, "lifo")

        assert _shape(layers) == [(Decimal("3"), Decimal("5"))]
        assert valuation.total_value(catalog.variation_id, catalog.warehouse_id, "lifo") == Decimal("15")

    def test_weighted_average(self, valuation, catalog, two_receipts_one_sale):
        [layer] = valuation.layers(catalog.variation_id, catalog.warehouse_id, "weighted_avg")

        # (10*5 + 5*8) / 15 = 6, unchanged by the sale
        assert layer.unit_cost == Decimal("6")
        assert layer.quantity == Decimal("3")
        assert valuation.total_value(catalog.variation_id, catalog.warehouse_id, "weighted_avg") == Decimal("18")

    def test_default_method_is_fifo(self, valuation, catalog, two_receipts_one_sale):
        assert _shape(valuation.layers(catalog.variation_id, catalog.warehouse_id)) == [
            (Decimal("3"), Decimal("8"))
        ]

    def test_layer_quantity_matches_balance(self, valuation, balances, catalog, two_receipts_one_sale):
        for method in ("fifo", "lifo", "weighted_avg"):
            layers = valuation.layers(catalog.variation_id, catalog.warehouse_id, method)
            assert sum(l.quantity for l in layers) == balances.get_balance(
                catalog.variation_id, catalog.warehouse_id
            )

    def test_inbound_without_cost_uses_current_average(self, valuation, balances, catalog, stock_in):
        stock_in(4, unit_cost="10")
        balances.apply_delta(catalog.variation_id, catalog.warehouse_id, 2, "sale_void", "sale", "S-1")

        layers = valuation.layers(catalog.variation_id, catalog.warehouse_id, "fifo")
        assert _shape(layers) == [(Decimal("4"), Decimal("10")), (Decimal("2"), Decimal("10"))]

    def test_unmaintained_method(self, session, deterministic_clock, catalog):
        fifo_only = ValuationService(session, deterministic_clock, methods=["fifo"])
        with pytest.raises(ValidationError) as exc_info:
            fifo_only.layers(catalog.variation_id, catalog.warehouse_id, "lifo")
        assert exc_info.value.field == "method"

    def test_unknown_method(self, valuation, catalog):
        with pytest.raises(ValidationError):
            valuation.layers(catalog.variation_id, catalog.warehouse_id, "hifo")


class TestIncrementalSync:

    def test_sync_between_movements_matches_rebuild(self, valuation, balances, catalog, stock_in):
        v, loc = catalog.variation_id, catalog.warehouse_id
        stock_in(10, unit_cost="5")
        valuation.sync(v, loc, "fifo")
        balances.apply_delta(v, loc, -4, "sale", "sale", "S-1")
        valuation.sync(v, loc, "fifo")
        stock_in(6, unit_cost="7")
        balances.apply_delta(v, loc, -8, "sale", "sale", "S-2")
        incremental = _shape(valuation.sync(v, loc, "fifo"))

        valuation.rebuild(v, loc, "fifo")
        assert _shape(valuation.layers(v, loc, "fifo")) == incremental == [(Decimal("4"), Decimal("7"))]

    def test_rebuild_all_methods(self, valuation, catalog, two_receipts_one_sale, captured_logs):
        valuation.rebuild(catalog.variation_id, catalog.warehouse_id)

        rebuilt = [r for r in captured_logs() if r["message"] == "valuation_rebuilt"]
        assert sorted(r["method"] for r in rebuilt) == ["fifo", "lifo", "weighted_avg"]

    def test_no_new_movements_is_a_no_op(self, valuation, catalog, two_receipts_one_sale):
        first = valuation.sync(catalog.variation_id, catalog.warehouse_id)
        second = valuation.sync(catalog.variation_id, catalog.warehouse_id)
        assert _shape(first) == _shape(second)


class TestUnvaluedQuantity:

    def test_shortfall_then_fill(self, valuation, balances, catalog, stock_in):
        v, loc = catalog.variation_id, catalog.warehouse_id
        balances.apply_delta(v, loc, -3, "sale", "sale", "S-1", allow_negative=True)

        assert valuation.layers(v, loc) == ()
        assert valuation.unvalued_quantity(v, loc) == Decimal("3")

        stock_in(5, unit_cost="4")
        assert _shape(valuation.layers(v, loc)) == [(Decimal("2"), Decimal("4"))]
        assert valuation.unvalued_quantity(v, loc) == Decimal("0")
        assert valuation.total_value(v, loc) == Decimal("8")

    def test_fill_larger_than_receipt(self, valuation, balances, catalog, stock_in):
        v, loc = catalog.variation_id, catalog.warehouse_id
        balances.apply_delta(v, loc, -5, "sale", "sale", "S-1", allow_negative=True)
        stock_in(2, unit_cost="4")

        assert valuation.layers(v, loc) == ()
        assert valuation.unvalued_quantity(v, loc) == Decimal("3")


class TestValuationQuery:

    @pytest.fixture
    def spread(self, balances, catalog, stock_in):
        stock_in(10, unit_cost="5")
        stock_in(5, location_id=catalog.store_id, unit_cost="8")
        stock_in(2, variation_id=catalog.second_variation_id, unit_cost="1")

    def test_per_location(self, valuation, catalog, spread):
        lines = valuation.query(location_id=catalog.warehouse_id)

        assert [(l.variation_id, l.qty, l.total_value) for l in lines] == [
            (catalog.variation_id, Decimal("10"), Decimal("50")),
            (catalog.second_variation_id, Decimal("2"), Decimal("2")),
        ]
        assert all(l.location_id == catalog.warehouse_id for l in lines)

    def test_aggregated_across_locations(self, valuation, catalog, spread):
        lines = {l.variation_id: l for l in valuation.query(business_id=catalog.business_id)}

        widget = lines[catalog.variation_id]
        assert widget.location_id is None
        assert widget.qty == Decimal("15")
        assert widget.total_value == Decimal("90")
        assert widget.unit_cost == Decimal("6")
        assert widget.layer_count == 2

    def test_other_business_is_empty(self, valuation, catalog, spread):
        assert valuation.query(business_id=catalog.other_business_id) == []
