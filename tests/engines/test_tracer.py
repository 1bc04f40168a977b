"""
Tests for the engine tracer.

Covers:
- Deterministic fingerprints independent of call style
- STOCK_ENGINE_TRACE log records
"""

from decimal import Decimal

from stock_engines.tracer import _canonicalize, compute_input_fingerprint, traced_engine
from stock_engines.valuation.cost_layer import CostMethod


@traced_engine("test.double", "2.1", fingerprint_fields=("x", "note"))
def _double(x, note=None):
    return x * 2


class TestFingerprint:
    """Tests for input fingerprinting."""

    def test_sixteen_hex_chars(self):
        fp = compute_input_fingerprint(("a",), {"a": 1})
        assert len(fp) == 16
        int(fp, 16)

    def test_decimal_scale_does_not_matter(self):
        a = compute_input_fingerprint(("q",), {"q": Decimal("5")})
        b = compute_input_fingerprint(("q",), {"q": Decimal("5.000")})
        assert a == b

    def test_different_inputs_differ(self):
        a = compute_input_fingerprint(("q",), {"q": Decimal("5")})
        b = compute_input_fingerprint(("q",), {"q": Decimal("6")})
        assert a != b

    def test_missing_field_is_null(self):
        assert compute_input_fingerprint(("q",), {}) == compute_input_fingerprint(("q",), {"q": None})

    def test_canonical_forms(self):
        assert _canonicalize(CostMethod.LIFO) == "lifo"
        assert _canonicalize({"b": 1, "a": 2}) == "{a:2,b:1}"
        assert _canonicalize([Decimal("1.50"), None]) == "[1.5,null]"


class TestTraceRecord:
    """Tests for the emitted trace log."""

    def test_trace_emitted(self, captured_logs):
        assert _double(Decimal("2")) == Decimal("4")

        [record] = [r for r in captured_logs() if r.get("engine_name") == "test.double"]
        assert record["message"] == "STOCK_ENGINE_TRACE"
        assert record["engine_version"] == "2.1"
        assert len(record["input_fingerprint"]) == 16

    def test_positional_and_keyword_calls_match(self, captured_logs):
        _double(Decimal("3"), "n")
        _double(x=Decimal("3"), note="n")

        fps = [r["input_fingerprint"] for r in captured_logs() if r.get("engine_name") == "test.double"]
        assert len(fps) == 2
        assert fps[0] == fps[1]
