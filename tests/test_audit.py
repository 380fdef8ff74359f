"""Tests for the audit logger's structured error records."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from loguru import logger

from scep_bridge.audit.logger import clear_correlation_id, log_error, set_correlation_id
from scep_bridge.exceptions import DepotError


@pytest.fixture
def records() -> Iterator[list[dict[str, Any]]]:
    """Collect the extra fields of every audit record."""
    captured: list[dict[str, Any]] = []
    sink_id = logger.add(
        lambda message: captured.append(dict(message.record["extra"])),
        filter=lambda r: r["extra"].get("audit", False),
    )
    yield captured
    logger.remove(sink_id)


class TestLogError:
    """Tests for error records."""

    def test_bridge_error_details_bound(self, records: list[dict[str, Any]]) -> None:
        """Audit fields of a bridge error appear on the record."""
        set_correlation_id("req-1")
        try:
            log_error(error=DepotError.cert_parse_failed(index=2, reason="bad"), context="depot")
        finally:
            clear_correlation_id()

        assert len(records) == 1
        extra = records[0]
        assert extra["event"] == "error"
        assert extra["correlation_id"] == "req-1"
        assert extra["context"] == "depot"
        assert extra["exception_type"] == "DepotError"
        assert extra["message"] == "parsing cert 2: bad"
        assert extra["phase"] == "certificate"
        assert extra["index"] == 2

    def test_other_errors_have_type_and_message(self, records: list[dict[str, Any]]) -> None:
        log_error(error=ValueError("boom"), context="startup")

        extra = records[0]
        assert extra["error_type"] == "ValueError"
        assert extra["error_message"] == "boom"
        assert "exception_type" not in extra
