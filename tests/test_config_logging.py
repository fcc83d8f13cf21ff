"""
Tests for environment configuration and structured logging
"""

import json
import logging
import sys
import pytest
from decimal import Decimal

from fleet_billing import config as config_module
from fleet_billing.config import BillingConfig, get_config, reload_config
from fleet_billing.logging_config import (
    ROOT_LOGGER, JSONFormatter, get_logger, log_action, setup_logging
)


class TestBillingConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("FLEET_BILLING_LATE_FEE_PERCENTAGE", raising=False)
        config = BillingConfig()
        assert config.late_fee_percentage == Decimal("10")
        assert config.default_financing_months == 54
        assert config.batch_workers == 1
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        original = config_module.config
        monkeypatch.setenv("FLEET_BILLING_LATE_FEE_PERCENTAGE", "2.5")
        monkeypatch.setenv("FLEET_BILLING_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("FLEET_BILLING_BATCH_WORKERS", "8")
        try:
            reloaded = reload_config()
            assert get_config() is reloaded
            assert reloaded.late_fee_percentage == Decimal("2.5")
            assert reloaded.storage_backend == "memory"
            assert reloaded.batch_workers == 8
        finally:
            config_module.config = original


@pytest.fixture
def restore_root_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    handlers, level, propagate = logger.handlers[:], logger.level, logger.propagate
    yield
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


class TestStructuredLogging:

    def test_module_loggers_are_namespaced(self):
        assert get_logger("billing").name == "fleet_billing.billing"
        assert get_logger("fleet_billing.api").name == "fleet_billing.api"
        assert get_logger().name == ROOT_LOGGER

    def test_json_lines_carry_ledger_fields(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "billing.log"
        setup_logging(level="INFO", log_format="json", log_file=str(log_file))

        log_action(get_logger("billing"), "info", "Payment applied", action="apply_payment",
                   financing_id="fin-1", quota_number=3, extra={"amount": "250.00"})
        get_logger("billing").debug("below threshold")

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["message"] == "Payment applied"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "fleet_billing.billing"
        assert entry["action"] == "apply_payment"
        assert entry["financing_id"] == "fin-1"
        assert entry["quota_number"] == 3
        assert entry["extra"] == {"amount": "250.00"}
        assert "correlation_id" not in entry

    def test_exceptions_are_included(self):
        try:
            raise RuntimeError("storage unavailable")
        except RuntimeError:
            record = logging.getLogger(ROOT_LOGGER).makeRecord(
                ROOT_LOGGER, logging.ERROR, __file__, 1, "Generation failed", (), sys.exc_info()
            )
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "ERROR"
        assert "storage unavailable" in entry["exception"]

    def test_text_format(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "billing.log"
        setup_logging(level="DEBUG", log_format="text", log_file=str(log_file))
        get_logger("billing").debug("Quota materialized")

        line = log_file.read_text().strip()
        assert "DEBUG [fleet_billing.billing] Quota materialized" in line
