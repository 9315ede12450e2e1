from __future__ import annotations

import logging

from dualsync.core.observability import (
    OperationContext,
    generate_correlation_id,
    get_correlation_id,
    get_operation,
    log_event,
)
from dualsync.core.operational_logging import log_operational_error


def test_operation_context_generates_uuid4_correlation_id() -> None:
    with OperationContext("detect_conflicts") as operation:
        correlation_id = operation.correlation_id
        assert get_operation() == "detect_conflicts"

    assert len(correlation_id) == 36
    assert correlation_id.count("-") == 4
    assert get_operation() is None
    assert get_correlation_id() is None


def test_nested_operation_reuses_outer_correlation_id() -> None:
    with OperationContext("detect_many") as outer:
        with OperationContext("detect_conflicts") as inner:
            assert inner.correlation_id == outer.correlation_id
            assert get_operation() == "detect_conflicts"
        assert get_operation() == "detect_many"


def test_log_event_returns_structured_event_dict() -> None:
    logger = logging.getLogger("tests.observability")

    event = log_event(logger, "conflict_detected", {"table": "assets"}, "cid-123")

    assert event["event"] == "conflict_detected"
    assert event["correlation_id"] == "cid-123"
    assert event["payload"] == {"table": "assets"}
    assert "timestamp" in event


def test_log_event_uses_context_correlation_id(caplog) -> None:
    logger = logging.getLogger("tests.observability")

    with caplog.at_level(logging.INFO, logger="tests.observability"):
        with OperationContext("resolve_conflict", correlation_id="cid-ctx"):
            event = log_event(logger, "conflict_resolved", {})

    assert event["correlation_id"] == "cid-ctx"
    assert event["operation"] == "resolve_conflict"
    assert caplog.records[-1].correlation_id == "cid-ctx"


def test_log_operational_error_attaches_error_type(caplog) -> None:
    logger = logging.getLogger("tests.operational")

    with caplog.at_level(logging.ERROR, logger="tests.operational"):
        log_operational_error("fallo", exc=ValueError("x"), extra={"table": "assets"}, logger=logger)

    record = caplog.records[-1]
    assert record.extra["error_type"] == "ValueError"
    assert record.extra["table"] == "assets"
    assert record.exc_info is not None


def test_generate_correlation_id_is_unique() -> None:
    assert generate_correlation_id() != generate_correlation_id()
