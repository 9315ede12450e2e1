from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from dualsync.application.conflict_service import ConflictService, ServiceOptions
from dualsync.application.rule_registry import RuleRegistry
from dualsync.bootstrap.settings import EngineSettings, load_settings
from dualsync.core.errors import InfraError
from dualsync.domain.ports import PrimaryStore, RecordLockProvider, RuleProvider, SecondaryStore
from dualsync.infrastructure.db import get_connection
from dualsync.infrastructure.ledger_sqlite import SQLiteConflictLedger
from dualsync.infrastructure.migrations import run_migrations
from dualsync.infrastructure.primary_sqlite import SQLitePrimaryStore
from dualsync.infrastructure.record_locks import InProcessRecordLocks, SQLiteLeaseLocks
from dualsync.infrastructure.rules_json import JsonFileRuleProvider
from dualsync.infrastructure.rules_sqlite import SQLiteRuleProvider
from dualsync.infrastructure.secondary_falkordb import FalkorDBSecondaryStore
from dualsync.infrastructure.secondary_sheets import SheetsSecondaryStore

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Path], sqlite3.Connection]


@dataclass
class EngineContainer:
    settings: EngineSettings
    ledger: SQLiteConflictLedger
    rules: RuleRegistry
    rule_provider: RuleProvider
    primary: PrimaryStore
    secondary: SecondaryStore
    locks: RecordLockProvider
    service: ConflictService
    connections: list[sqlite3.Connection] = field(default_factory=list)

    def close(self) -> None:
        for connection in self.connections:
            connection.close()
        self.connections.clear()


def initialize(connection: sqlite3.Connection) -> list[int]:
    """Crea/actualiza las tablas del motor (ledger, reglas, leases)."""
    return run_migrations(connection)


def build_secondary(settings: EngineSettings) -> SecondaryStore:
    if settings.secondary_backend == "sheets":
        if settings.sheets_credentials is None or not settings.sheets_spreadsheet_id:
            raise InfraError(
                "Backend 'sheets' requiere DUALSYNC_SHEETS_CREDENTIALS y DUALSYNC_SHEETS_SPREADSHEET_ID."
            )
        return SheetsSecondaryStore.connect(settings.sheets_credentials, settings.sheets_spreadsheet_id)

    return FalkorDBSecondaryStore.connect(settings.falkor_host, settings.falkor_port, settings.falkor_graph)


def service_options(settings: EngineSettings) -> ServiceOptions:
    return ServiceOptions(
        detect_timeout_seconds=settings.detect_timeout_seconds,
        resolve_timeout_seconds=settings.resolve_timeout_seconds,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        read_retries=settings.read_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        timestamp_fields=settings.timestamp_fields,
        timestamp_skew_seconds=settings.timestamp_skew_seconds,
    )


def build_container(
    settings: EngineSettings | None = None,
    *,
    connection_factory: ConnectionFactory = get_connection,
    secondary: SecondaryStore | None = None,
) -> EngineContainer:
    """Cablea el motor; cada colaborador SQLite recibe su propia conexión."""
    settings = settings or load_settings()

    ledger_connection = connection_factory(settings.db_path)
    initialize(ledger_connection)
    primary_connection = connection_factory(settings.primary_db_path)
    connections = [ledger_connection, primary_connection]

    ledger = SQLiteConflictLedger(ledger_connection)
    rule_provider: RuleProvider
    if settings.rules_file is not None:
        rule_provider = JsonFileRuleProvider(settings.rules_file)
    else:
        rule_provider = SQLiteRuleProvider(ledger_connection)
    rules = RuleRegistry(rule_provider)

    locks: RecordLockProvider
    if settings.lock_backend == "sqlite":
        locks_connection = connection_factory(settings.db_path)
        connections.append(locks_connection)
        locks = SQLiteLeaseLocks(locks_connection, lease_seconds=settings.lease_seconds)
    else:
        locks = InProcessRecordLocks()

    primary = SQLitePrimaryStore(primary_connection)
    secondary_store = secondary if secondary is not None else build_secondary(settings)

    service = ConflictService(
        ledger=ledger,
        primary=primary,
        secondary=secondary_store,
        rules=rules,
        locks=locks,
        options=service_options(settings),
    )
    metrics = service.rebuild_metrics()
    logger.info(
        "Motor inicializado: %s conflictos en ledger, backend secundario %s, locks %s",
        metrics.total_conflicts,
        settings.secondary_backend,
        settings.lock_backend,
    )
    return EngineContainer(
        settings=settings,
        ledger=ledger,
        rules=rules,
        rule_provider=rule_provider,
        primary=primary,
        secondary=secondary_store,
        locks=locks,
        service=service,
        connections=connections,
    )
