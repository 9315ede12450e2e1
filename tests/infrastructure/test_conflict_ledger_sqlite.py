from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dualsync.domain.errors import (
    ConflictNotFoundError,
    DuplicateConflictError,
    InvalidResolutionError,
    InvalidTransitionError,
)
from dualsync.domain.models import Conflict, ConflictStatus, ConflictType, Resolution, ResolutionStrategy
from dualsync.infrastructure.ledger_sqlite import SQLiteConflictLedger

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _conflict(conflict_id: str, *, record_id: str = "42", minutes: int = 0, conflict_type=ConflictType.DATA_MISMATCH):
    return Conflict(
        id=conflict_id,
        table="assets",
        record_id=record_id,
        conflict_type=conflict_type,
        primary_data={"name": "Park", "tags": ["a", "b"]},
        secondary_data={"name": "Central Park"},
        conflict_fields=("name", "tags"),
        detected_at=BASE + timedelta(minutes=minutes),
    )


def test_store_and_get_round_trip(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))

    loaded = ledger.get("c1")

    assert loaded == _conflict("c1")
    assert ledger.get("missing") is None


def test_second_open_conflict_of_same_type_is_rejected(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))

    with pytest.raises(DuplicateConflictError) as excinfo:
        ledger.store(_conflict("c2"))

    assert excinfo.value.existing_id == "c1"
    ledger.store(_conflict("c3", conflict_type=ConflictType.TIMESTAMP_CONFLICT))
    assert len(ledger.find_open("assets", "42")) == 2


def test_resolved_conflict_frees_the_slot(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))
    ledger.update_status("c1", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))
    ledger.update_status("c1", ConflictStatus.RESOLVED)

    ledger.store(_conflict("c2", minutes=1))

    assert [conflict.id for conflict in ledger.find_open("assets", "42")] == ["c2"]


def test_failed_conflict_cannot_reopen_while_a_newer_one_is_open(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))
    ledger.update_status("c1", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.MERGE))
    ledger.update_status("c1", ConflictStatus.FAILED, error="secondary caído")
    ledger.store(_conflict("c2", minutes=1))

    with pytest.raises(DuplicateConflictError) as excinfo:
        ledger.update_status("c1", ConflictStatus.RESOLVING)

    assert excinfo.value.existing_id == "c2"
    assert ledger.get("c1").status is ConflictStatus.FAILED


def test_update_status_tracks_attempts_and_errors(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))
    resolution = Resolution(strategy=ResolutionStrategy.MERGE, resolved_data={"name": "Park"})

    ledger.update_status("c1", ConflictStatus.RESOLVING, resolution)
    failed = ledger.update_status("c1", ConflictStatus.FAILED, error="timeout")
    ledger.update_status("c1", ConflictStatus.RESOLVING)
    resolved = ledger.update_status("c1", ConflictStatus.RESOLVED)

    assert failed.last_error == "timeout"
    assert failed.resolution == resolution
    assert resolved.attempts == 2
    assert resolved.last_error is None
    assert resolved.resolved_at is not None
    assert resolved.resolved_at >= resolved.detected_at
    assert resolved.resolution.resolved_at == resolved.resolved_at


def test_invalid_transitions_are_rejected(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))

    with pytest.raises(InvalidTransitionError):
        ledger.update_status("c1", ConflictStatus.RESOLVED, Resolution(strategy=ResolutionStrategy.MANUAL))
    with pytest.raises(ConflictNotFoundError):
        ledger.update_status("missing", ConflictStatus.RESOLVING)

    ledger.update_status("c1", ConflictStatus.RESOLVING)
    with pytest.raises(InvalidResolutionError):
        ledger.update_status("c1", ConflictStatus.RESOLVED)


def test_list_unresolved_is_newest_first_and_includes_failed(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("old", record_id="1", minutes=0))
    ledger.store(_conflict("mid", record_id="2", minutes=5))
    ledger.store(_conflict("new", record_id="3", minutes=10))
    ledger.update_status("mid", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.MERGE))
    ledger.update_status("mid", ConflictStatus.FAILED, error="x")
    ledger.update_status("old", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))
    ledger.update_status("old", ConflictStatus.RESOLVED)

    assert [conflict.id for conflict in ledger.list_unresolved()] == ["new", "mid"]
    assert [conflict.id for conflict in ledger.list_by_status(ConflictStatus.FAILED)] == ["mid"]
    assert [conflict.id for conflict in ledger.list_all()] == ["old", "mid", "new"]


def test_purge_closed_removes_old_resolved_and_superseded_only(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("resolved", record_id="1"))
    ledger.store(_conflict("failed", record_id="2"))
    ledger.store(_conflict("stale", record_id="3"))
    ledger.update_status(
        "resolved",
        ConflictStatus.RESOLVING,
        Resolution(strategy=ResolutionStrategy.PRIMARY_WINS, resolved_at=BASE + timedelta(hours=1)),
    )
    ledger.update_status("resolved", ConflictStatus.RESOLVED)
    ledger.update_status("failed", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.MERGE))
    ledger.update_status("failed", ConflictStatus.FAILED, error="x")
    ledger.update_status("stale", ConflictStatus.SUPERSEDED, error="superseded", closed_at=BASE + timedelta(hours=2))

    removed = ledger.purge_closed(BASE + timedelta(days=1))

    assert removed == 2
    assert ledger.get("resolved") is None
    assert ledger.get("stale") is None
    assert ledger.get("failed") is not None


def test_superseded_closes_without_resolution_and_frees_the_slot(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("c1"))

    closed = ledger.update_status(
        "c1", ConflictStatus.SUPERSEDED, error="superseded: el registro cambió", closed_at=BASE + timedelta(hours=1)
    )
    ledger.store(_conflict("c2", minutes=1))

    assert closed.status is ConflictStatus.SUPERSEDED
    assert closed.resolution is None
    assert closed.resolved_at == BASE + timedelta(hours=1)
    assert closed.last_error == "superseded: el registro cambió"
    assert [conflict.id for conflict in ledger.find_open("assets", "42")] == ["c2"]
    assert [conflict.id for conflict in ledger.list_unresolved()] == ["c2"]
    with pytest.raises(InvalidTransitionError):
        ledger.update_status("c1", ConflictStatus.RESOLVING)


def test_find_unresolved_includes_failed_entries_of_the_record(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    ledger.store(_conflict("failed"))
    ledger.update_status("failed", ConflictStatus.RESOLVING, Resolution(strategy=ResolutionStrategy.MERGE))
    ledger.update_status("failed", ConflictStatus.FAILED, error="x")
    ledger.store(_conflict("open", minutes=1, conflict_type=ConflictType.TIMESTAMP_CONFLICT))
    ledger.store(_conflict("other", record_id="7"))

    assert [conflict.id for conflict in ledger.find_unresolved("assets", "42")] == ["open", "failed"]


def test_snapshots_and_resolution_data_keep_their_python_types(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    snapshot = {
        "blob": b"\x00\xff\x10",
        "price": Decimal("10.10"),
        "labels": {"a", "b"},
        "seen_at": datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
        "local_at": datetime(2024, 5, 1, 8, 30),
        "day": date(2024, 5, 1),
        "nested": {"payload": b"\x01"},
    }
    conflict = Conflict(
        id="typed",
        table="assets",
        record_id="42",
        conflict_type=ConflictType.DATA_MISMATCH,
        primary_data=snapshot,
        secondary_data={"blob": b"\x00"},
        conflict_fields=("blob",),
        detected_at=BASE,
    )
    ledger.store(conflict)
    ledger.update_status(
        "typed",
        ConflictStatus.RESOLVING,
        Resolution(strategy=ResolutionStrategy.PRIMARY_WINS, resolved_data={"blob": b"\x00\xff\x10"}, winner="primary"),
    )

    loaded = ledger.get("typed")

    assert loaded.primary_data == snapshot
    assert loaded.secondary_data == {"blob": b"\x00"}
    assert loaded.resolution.resolved_data == {"blob": b"\x00\xff\x10"}


def test_plain_dicts_that_look_tagged_are_left_alone(connection: sqlite3.Connection) -> None:
    ledger = SQLiteConflictLedger(connection)
    data = {"meta": {"__type__": "bytes", "value": "AA==", "extra": 1}}
    ledger.store(
        Conflict(
            id="c1",
            table="assets",
            record_id="42",
            conflict_type=ConflictType.DATA_MISMATCH,
            primary_data=data,
            secondary_data={},
            conflict_fields=("meta",),
            detected_at=BASE,
        )
    )

    assert ledger.get("c1").primary_data == data
