"""
test_config_logging.py - Unit tests for configuration and logging setup

Tests:
- EngineConfig defaults and validation
- EngineConfig.from_env
- setup_logging standard and JSON output
"""

import json
import logging
import pytest
from decimal import Decimal

from nftlend import ConfigurationError, EngineConfig, get_logger, setup_logging
from nftlend.logging import JsonFormatter


class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()
        assert config.liquidation_threshold_bps == 8000
        assert config.journal_capacity == 1000
        assert config.history_limit == 100
        assert config.currency == "USDC"
        assert config.platform_fee_bps == 200
        assert config.insurance_fee_bps == 100
        assert config.auto_distribute is True

    def test_validate_returns_self(self):
        config = EngineConfig()
        assert config.validate() is config

    @pytest.mark.parametrize("field,value", [
        ("liquidation_threshold_bps", 0),
        ("journal_capacity", 0),
        ("history_limit", -1),
        ("platform_fee_bps", 10001),
        ("insurance_fee_bps", -5),
        ("currency", ""),
        ("log_level", "LOUD"),
        ("log_format", "xml"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigurationError, match=field.split("_")[0]):
            EngineConfig(**{field: value}).validate()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("NFTLEND_LIQUIDATION_THRESHOLD_BPS", "7500")
        monkeypatch.setenv("NFTLEND_JOURNAL_CAPACITY", "50")
        monkeypatch.setenv("NFTLEND_AUTO_DISTRIBUTE", "false")
        monkeypatch.setenv("NFTLEND_LOG_FORMAT", "json")
        config = EngineConfig.from_env()
        assert config.liquidation_threshold_bps == 7500
        assert config.journal_capacity == 50
        assert config.auto_distribute is False
        assert config.log_format == "json"
        assert config.currency == "USDC"

    def test_from_env_rejects_non_integer(self, monkeypatch):
        monkeypatch.setenv("NFTLEND_HISTORY_LIMIT", "lots")
        with pytest.raises(ConfigurationError, match="NFTLEND_HISTORY_LIMIT"):
            EngineConfig.from_env()

    def test_from_env_validates(self, monkeypatch):
        monkeypatch.setenv("NFTLEND_PLATFORM_FEE_BPS", "20000")
        with pytest.raises(ConfigurationError):
            EngineConfig.from_env()


class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)
        logging.getLogger("nftlend").setLevel(logging.NOTSET)

    def test_setup_sets_package_level(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("nftlend").level == logging.DEBUG

    def test_json_formatter_merges_extra(self):
        record = logging.LogRecord("nftlend.registry", logging.INFO, __file__, 1, "Loan created", None, None)
        record.extra = {"loan_id": 7, "operation": "create_loan"}
        data = json.loads(JsonFormatter().format(record))
        assert data["message"] == "Loan created"
        assert data["level"] == "INFO"
        assert data["loan_id"] == 7
        assert data["operation"] == "create_loan"

    def test_json_formatter_renders_decimals(self):
        record = logging.LogRecord("nftlend", logging.INFO, __file__, 1, "x", None, None)
        record.extra = {"amount": Decimal("1.50")}
        assert json.loads(JsonFormatter().format(record))["amount"] == "1.50"

    def test_get_logger_is_namespaced(self):
        assert get_logger("nftlend.service").name == "nftlend.service"
