from __future__ import annotations

import contextlib
from datetime import datetime, timezone

import pytest

from dualsync.application.resolution_executor import ResolutionExecutor
from dualsync.core.deadline import Deadline
from dualsync.core.errors import DeadlineExceededError, LockTimeoutError
from dualsync.domain.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictSupersededError,
    InvalidResolutionError,
    StoreWriteError,
    UnknownStrategyError,
)
from dualsync.domain.models import Conflict, ConflictStatus, ConflictType, Resolution, ResolutionStrategy
from dualsync.infrastructure.ledger_sqlite import SQLiteConflictLedger
from dualsync.infrastructure.record_locks import InProcessRecordLocks
from fakes import FakeStore

DETECTED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _BusyLocks:
    @contextlib.contextmanager
    def hold(self, table, record_id, timeout_seconds):
        raise LockTimeoutError(f"{table}/{record_id}", timeout_seconds)
        yield


def _setup(connection, locks=None, *, primary_data=None, secondary_data=None, conflict_type=ConflictType.DATA_MISMATCH):
    ledger = SQLiteConflictLedger(connection)
    primary = FakeStore("primary")
    secondary = FakeStore("secondary")
    primary_data = {"id": "42", "name": "Park"} if primary_data is None else primary_data
    secondary_data = {"id": "42", "name": "Central Park"} if secondary_data is None else secondary_data
    if primary_data:
        primary.seed("assets", "42", primary_data)
    if secondary_data:
        secondary.seed("assets", "42", secondary_data)
    fields = ("existence",) if conflict_type is ConflictType.DELETION_CONFLICT else ("name",)
    ledger.store(
        Conflict(
            id="conflict_1",
            table="assets",
            record_id="42",
            conflict_type=conflict_type,
            primary_data=primary_data,
            secondary_data=secondary_data,
            conflict_fields=fields,
            detected_at=DETECTED_AT,
        )
    )
    executor = ResolutionExecutor(ledger, primary, secondary, locks or InProcessRecordLocks())
    return executor, ledger, primary, secondary


def test_primary_wins_overwrites_secondary_field(connection) -> None:
    executor, _, primary, secondary = _setup(connection)

    resolved = executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS, resolved_by="ops"))

    assert resolved.status is ConflictStatus.RESOLVED
    assert secondary.get("assets", "42")["name"] == "Park"
    assert primary.writes() == []
    assert resolved.resolution.winner == "primary"
    assert resolved.resolved_at >= resolved.detected_at
    assert resolved.attempts == 1


def test_same_resolution_twice_is_a_noop(connection) -> None:
    executor, _, _, secondary = _setup(connection)
    resolution = Resolution(strategy=ResolutionStrategy.PRIMARY_WINS, resolved_by="ops")

    first = executor.resolve("conflict_1", resolution)
    second = executor.resolve("conflict_1", resolution)

    assert second == first
    assert len(secondary.writes()) == 1


def test_different_resolution_on_resolved_conflict_is_rejected(connection) -> None:
    executor, _, _, _ = _setup(connection)
    executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS, resolved_by="ops"))

    with pytest.raises(ConflictAlreadyResolvedError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.SECONDARY_WINS, resolved_by="ops"))


def test_partial_merge_failure_keeps_resolution_for_retry(connection) -> None:
    executor, ledger, primary, secondary = _setup(connection)
    secondary.write_failures = 1
    resolution = Resolution(strategy=ResolutionStrategy.MERGE, resolved_data={"name": "Park (Central)"})

    with pytest.raises(StoreWriteError):
        executor.resolve("conflict_1", resolution)

    failed = ledger.get("conflict_1")
    assert failed.status is ConflictStatus.FAILED
    assert failed.resolution.resolved_data == {"name": "Park (Central)"}
    assert "escritura rechazada" in failed.last_error
    assert primary.get("assets", "42")["name"] == "Park (Central)"

    retried = executor.resolve("conflict_1")

    assert retried.status is ConflictStatus.RESOLVED
    assert retried.last_error is None
    assert retried.attempts == 2
    assert secondary.get("assets", "42")["name"] == "Park (Central)"
    assert primary.writes()[-1] == primary.writes()[0]


def test_unknown_strategy_leaves_conflict_resolving(connection) -> None:
    executor, ledger, primary, secondary = _setup(connection)

    with pytest.raises(UnknownStrategyError):
        executor.resolve("conflict_1", Resolution(strategy="coin_flip"))

    stuck = ledger.get("conflict_1")
    assert stuck.status is ConflictStatus.RESOLVING
    assert stuck.resolution.strategy == "coin_flip"
    assert primary.writes() == [] and secondary.writes() == []


def test_manual_resolution_missing_fields_is_rejected_before_any_change(connection) -> None:
    executor, ledger, _, secondary = _setup(connection)

    with pytest.raises(InvalidResolutionError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.MANUAL, resolved_data={"size": 1}))

    assert ledger.get("conflict_1").status is ConflictStatus.DETECTED
    assert secondary.writes() == []


def test_timestamp_wins_uses_current_store_state(connection) -> None:
    executor, _, primary, secondary = _setup(
        connection,
        primary_data={"id": "42", "name": "Park", "updated_at": "2024-01-01T00:00:00Z"},
        secondary_data={"id": "42", "name": "Central Park", "updated_at": "2024-01-02T00:00:00Z"},
    )

    resolved = executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.TIMESTAMP_WINS))

    assert resolved.resolution.winner == "secondary"
    assert primary.get("assets", "42")["name"] == "Central Park"
    assert secondary.writes() == []


def test_secondary_wins_on_missing_secondary_deletes_primary(connection) -> None:
    executor, _, primary, _ = _setup(
        connection,
        secondary_data={},
        conflict_type=ConflictType.DELETION_CONFLICT,
    )

    resolved = executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.SECONDARY_WINS))

    assert primary.get("assets", "42") is None
    assert resolved.resolution.delete_record


def test_missing_conflict_raises_not_found(connection) -> None:
    executor, _, _, _ = _setup(connection)

    with pytest.raises(ConflictNotFoundError):
        executor.resolve("conflict_missing", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))


def test_retry_without_persisted_resolution_is_rejected(connection) -> None:
    executor, _, _, _ = _setup(connection)

    with pytest.raises(InvalidResolutionError):
        executor.resolve("conflict_1")


def test_lock_timeout_does_not_touch_the_conflict(connection) -> None:
    executor, ledger, _, _ = _setup(connection, locks=_BusyLocks())

    with pytest.raises(LockTimeoutError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))

    assert ledger.get("conflict_1").status is ConflictStatus.DETECTED


def test_expired_deadline_marks_attempt_failed(connection) -> None:
    executor, ledger, primary, secondary = _setup(connection)
    deadline = Deadline.never()
    deadline.cancel()
    resolution = Resolution(strategy=ResolutionStrategy.MANUAL, resolved_data={"name": "Central Park"})

    with pytest.raises(DeadlineExceededError):
        executor.resolve("conflict_1", resolution, deadline=deadline)

    assert ledger.get("conflict_1").status is ConflictStatus.FAILED
    assert primary.writes() == [] and secondary.writes() == []


def test_expired_deadline_before_rereading_leaves_conflict_detected(connection) -> None:
    executor, ledger, _, secondary = _setup(connection)
    deadline = Deadline.never()
    deadline.cancel()

    with pytest.raises(DeadlineExceededError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS), deadline=deadline)

    assert ledger.get("conflict_1").status is ConflictStatus.DETECTED
    assert secondary.writes() == []


def test_deletion_conflict_is_superseded_when_the_missing_side_reappears(connection) -> None:
    executor, ledger, primary, secondary = _setup(
        connection,
        secondary_data={},
        conflict_type=ConflictType.DELETION_CONFLICT,
    )
    secondary.seed("assets", "42", {"id": "42", "name": "Central Park"})

    with pytest.raises(ConflictSupersededError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.SECONDARY_WINS))

    closed = ledger.get("conflict_1")
    assert closed.status is ConflictStatus.SUPERSEDED
    assert closed.resolved_at is not None
    assert closed.last_error.startswith("superseded:")
    assert primary.get("assets", "42") == {"id": "42", "name": "Park"}
    assert primary.writes() == [] and secondary.writes() == []


def test_mismatch_is_superseded_when_one_side_disappeared(connection) -> None:
    executor, ledger, _, secondary = _setup(connection)
    secondary.tables["assets"].pop("42")

    with pytest.raises(ConflictSupersededError, match="secundario"):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))

    assert ledger.get("conflict_1").status is ConflictStatus.SUPERSEDED
    assert secondary.writes() == []


def test_superseded_conflict_cannot_be_resolved_again(connection) -> None:
    executor, ledger, _, _ = _setup(connection)
    ledger.update_status("conflict_1", ConflictStatus.SUPERSEDED, error="superseded: registro cambiado")

    with pytest.raises(ConflictSupersededError, match="registro cambiado"):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))


def test_persisted_winner_retry_is_superseded_when_stale(connection) -> None:
    executor, ledger, primary, secondary = _setup(
        connection,
        secondary_data={},
        conflict_type=ConflictType.DELETION_CONFLICT,
    )
    primary.write_failures = 1
    with pytest.raises(StoreWriteError):
        executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.SECONDARY_WINS))
    assert ledger.get("conflict_1").resolution.delete_record
    secondary.seed("assets", "42", {"id": "42", "name": "Central Park"})

    with pytest.raises(ConflictSupersededError):
        executor.resolve("conflict_1")

    assert ledger.get("conflict_1").status is ConflictStatus.SUPERSEDED
    assert primary.get("assets", "42") is not None


def test_primary_wins_copies_the_current_primary_values(connection) -> None:
    executor, _, primary, secondary = _setup(connection)
    primary.seed("assets", "42", {"id": "42", "name": "Park Avenue"})

    resolved = executor.resolve("conflict_1", Resolution(strategy=ResolutionStrategy.PRIMARY_WINS))

    assert secondary.get("assets", "42")["name"] == "Park Avenue"
    assert resolved.resolution.resolved_data == {"name": "Park Avenue"}
