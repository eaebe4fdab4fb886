"""
Tests — shared infrastructure.

Covers:
    1. parse_date / format_eur
    2. translate_store_errors
    3. JSON log formatter extra fields
    4. Request timing headers
    5. Config classes
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from holdingmanager.config import ProductionConfig, TestingConfig
from holdingmanager.core.exceptions import StoreUnavailableError
from holdingmanager.middleware.logging_config import JSONFormatter
from holdingmanager.utils.helpers import format_eur, parse_date, translate_store_errors


class TestParseDate:
    @pytest.mark.parametrize("value,expected", [
        ("2026-08-03", date(2026, 8, 3)),
        ("2026-08-03T10:30:00", date(2026, 8, 3)),
        ("03/08/2026", date(2026, 8, 3)),
        (datetime(2026, 8, 3, 12, 0), date(2026, 8, 3)),
        (date(2026, 8, 3), date(2026, 8, 3)),
        ("", None),
        (None, None),
        ("demain", None),
    ])
    def test_parse(self, value, expected):
        assert parse_date(value) == expected


class TestFormatEur:
    @pytest.mark.parametrize("amount,expected", [
        (Decimal("1234.5"), "1 234,50 €"),
        (0, "0,00 €"),
        (None, "0,00 €"),
        (1234567.891, "1 234 567,89 €"),
    ])
    def test_format(self, amount, expected):
        assert format_eur(amount) == expected

    def test_groups_with_plain_space(self):
        formatted = format_eur(Decimal("9876543.21"))
        assert formatted == "9 876 543,21 \u20ac"
        assert "\u202f" not in formatted and "\xa0" not in formatted


class TestTranslateStoreErrors:
    def test_operational_error_becomes_store_unavailable(self):
        @translate_store_errors
        def flaky():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(StoreUnavailableError, match="database is locked"):
            flaky()

    def test_other_errors_pass_through(self):
        @translate_store_errors
        def broken():
            raise KeyError("x")

        with pytest.raises(KeyError):
            broken()


class TestJSONFormatter:
    def test_extra_fields(self):
        record = logging.LogRecord(
            "holdingmanager.services.workflow_lifecycle", logging.INFO, __file__, 10,
            "Workflow %s submitted", ("CON-2026-0001",), None,
        )
        record.instance_id = 7
        record.numero = "CON-2026-0001"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Workflow CON-2026-0001 submitted"
        assert entry["level"] == "INFO"
        assert entry["instance_id"] == 7
        assert entry["numero"] == "CON-2026-0001"
        assert "rule" not in entry


class TestRequestTiming:
    def test_headers(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestConfig:
    def test_testing_uses_memory_db(self):
        assert TestingConfig.SQLALCHEMY_DATABASE_URI == "sqlite:///:memory:"
        assert TestingConfig.TESTING is True

    def test_production_requires_env(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(RuntimeError):
            ProductionConfig()
