from __future__ import annotations

import json
import sqlite3
from typing import Any

from dualsync.core.errors import PersistenceError
from dualsync.domain.models import DetectionRule
from dualsync.domain.timestamps import format_iso, utc_now
from dualsync.infrastructure.sqlite_uow import transaction


class SQLiteRuleProvider:
    """Reglas de detección guardadas en ``conflict_detection_rules``.

    Devuelve filas crudas; la validación la hace ``RuleRegistry`` para poder
    rechazar reglas sueltas sin perder el resto.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def fetch_rules(self) -> list[dict[str, Any]]:
        try:
            rows = self._connection.execute(
                """
                SELECT id, name, description, table_name, conditions, resolution_strategy, enabled
                FROM conflict_detection_rules
                ORDER BY table_name ASC, created_at ASC, id ASC
                """
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"No se pudieron leer las reglas de detección: {exc}") from exc
        return [dict(row) for row in rows]

    def save_rule(self, rule: DetectionRule) -> None:
        now = format_iso(utc_now())
        conditions = [
            {"field": condition.field, "operator": condition.operator.value, "value": condition.value}
            for condition in rule.conditions
        ]
        try:
            with transaction(self._connection):
                self._connection.execute(
                    """
                    INSERT INTO conflict_detection_rules (
                        id, name, description, table_name, conditions, resolution_strategy, enabled,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        description = excluded.description,
                        table_name = excluded.table_name,
                        conditions = excluded.conditions,
                        resolution_strategy = excluded.resolution_strategy,
                        enabled = excluded.enabled,
                        updated_at = excluded.updated_at
                    """,
                    (
                        rule.id,
                        rule.name,
                        rule.description,
                        rule.table,
                        json.dumps(conditions, ensure_ascii=False),
                        rule.resolution_strategy.value,
                        1 if rule.enabled else 0,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"No se pudo guardar la regla {rule.id}: {exc}") from exc

    def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        try:
            with transaction(self._connection):
                cursor = self._connection.execute(
                    "UPDATE conflict_detection_rules SET enabled = ?, updated_at = ? WHERE id = ?",
                    (1 if enabled else 0, format_iso(utc_now()), rule_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"No se pudo actualizar la regla {rule_id}: {exc}") from exc
        return cursor.rowcount > 0
