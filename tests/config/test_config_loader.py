"""
Tests for stock ledger configuration loading.

Covers:
- Packaged defaults parsed into frozen schema dataclasses
- Merge order: defaults, file (argument or STOCK_LEDGER_CONFIG), overrides
- Load-time validation of every section
- Checksum determinism
- STOCK_CONFIG_TRACE log entry
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal

import pytest

from stock_config import (
    CONFIG_ENV_VAR,
    ReceiptFallback,
    StockLedgerConfig,
    get_active_config,
)
from stock_config.loader import compute_checksum, load_yaml_file, merge, parse_config


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


class TestDefaults:
    """The packaged defaults alone."""

    def test_defaults_parse(self):
        config = get_active_config()

        assert isinstance(config, StockLedgerConfig)
        assert config.version == "1.0"
        assert config.ledger.negative_allowed_types == ()
        assert config.ledger.verify_after_write is False
        assert config.valuation.default_method == "fifo"
        assert config.valuation.methods == ("fifo", "lifo", "weighted_avg")
        assert config.transfers.receipt_fallback is ReceiptFallback.SENT_QUANTITY
        assert config.transfers.max_attempts == 3
        assert config.reconciliation.variance_percent_threshold == Decimal("5")
        assert config.reconciliation.high_activity_count == 100
        assert config.reconciliation.activity_window_days == 30
        assert config.database.url == "sqlite:///:memory:"

    def test_config_is_frozen(self):
        config = get_active_config()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.version = "2.0"
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.transfers.max_attempts = 10

    def test_checksum_is_stable(self):
        assert get_active_config().checksum == get_active_config().checksum
        assert len(get_active_config().checksum) == 64


class TestMergeOrder:
    """Defaults, then file, then overrides."""

    def test_overrides_replace_single_keys(self):
        config = get_active_config(
            overrides={"transfers": {"receipt_fallback": "require_receipt"}}
        )

        assert config.transfers.receipt_fallback is ReceiptFallback.REQUIRE_RECEIPT
        # siblings keep their defaults
        assert config.transfers.max_attempts == 3

    def test_overrides_change_checksum(self):
        base = get_active_config()
        changed = get_active_config(overrides={"ledger": {"verify_after_write": True}})
        assert base.checksum != changed.checksum

    def test_file_argument(self, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text("ledger:\n  negative_allowed_types: [sale]\n")

        config = get_active_config(path)
        assert config.ledger.negative_allowed_types == ("sale",)

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("valuation:\n  default_method: lifo\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert get_active_config().valuation.default_method == "lifo"

    def test_overrides_win_over_file(self, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text("transfers:\n  max_attempts: 7\n")

        config = get_active_config(path, overrides={"transfers": {"max_attempts": 2}})
        assert config.transfers.max_attempts == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_merge_does_not_mutate_base(self):
        base = {"a": {"b": 1, "c": 2}}
        merged = merge(base, {"a": {"b": 9}})

        assert merged == {"a": {"b": 9, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}

    def test_empty_file_is_empty_mapping(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml_file(path) == {}

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml_file(path)


class TestValidation:
    """Invalid values fail at load time, naming the key."""

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({"ledger": {"negative_allowed_types": ["teleport"]}}, "negative_allowed_types"),
            ({"ledger": {"verify": True}}, "Unknown ledger"),
            ({"valuation": {"methods": ["hifo"]}}, "hifo"),
            ({"valuation": {"methods": ["fifo"], "default_method": "lifo"}}, "default_method"),
            ({"transfers": {"receipt_fallback": "guess"}}, "receipt_fallback"),
            ({"transfers": {"max_attempts": 0}}, "max_attempts"),
            ({"transfers": {"max_attempts": True}}, "max_attempts"),
            ({"transfers": {"retry_backoff_seconds": -1}}, "retry_backoff_seconds"),
            ({"reconciliation": {"variance_percent_threshold": "lots"}}, "variance_percent_threshold"),
            ({"reconciliation": {"variance_quantity_threshold": "-3"}}, "variance_quantity_threshold"),
            ({"reconciliation": {"activity_window_days": 0}}, "activity_window_days"),
            ({"database": {"url": ""}}, "database.url"),
            ({"metrics": {"enabled": True}}, "Unknown top-level"),
        ],
    )
    def test_rejected(self, overrides, match):
        with pytest.raises(ValueError, match=match):
            get_active_config(overrides=overrides)

    def test_version_required(self):
        with pytest.raises(ValueError, match="version"):
            parse_config({"ledger": {}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="ledger must be a mapping"):
            parse_config({"version": "1", "ledger": ["sale"]})

    def test_minimal_document(self):
        config = parse_config({"version": 2})

        assert config.version == "2"
        assert config.valuation.default_method == "fifo"
        assert config.checksum == compute_checksum({"version": 2})


class TestConfigTrace:
    """Every load leaves an audit trail."""

    def test_trace_logged(self, captured_logs, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text("ledger:\n  negative_allowed_types: [sale]\n")

        config = get_active_config(path)

        [record] = [r for r in captured_logs() if r["message"] == "STOCK_CONFIG_TRACE"]
        assert record["checksum"] == config.checksum
        assert record["config_version"] == "1.0"
        assert record["source"] == str(path)
        assert record["negative_allowed_types"] == ["sale"]

    def test_defaults_source(self, captured_logs):
        get_active_config()
        [record] = [r for r in captured_logs() if r["message"] == "STOCK_CONFIG_TRACE"]
        assert record["source"] == "defaults"
        assert record["receipt_fallback"] == "sent_quantity"
