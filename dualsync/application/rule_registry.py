from __future__ import annotations

import json
import logging
from threading import RLock
from typing import Any

from dualsync.core.observability import log_event
from dualsync.domain.errors import RuleValidationError
from dualsync.domain.models import ConditionOperator, DetectionRule, ResolutionStrategy, RuleCondition
from dualsync.domain.ports import RuleProvider

logger = logging.getLogger(__name__)


def parse_rule(raw: dict[str, Any]) -> DetectionRule:
    """Convierte una fila/objeto de configuración en ``DetectionRule``.

    Lanza ``RuleValidationError`` ante estrategia u operador desconocidos, tabla
    vacía o condiciones mal formadas.
    """
    rule_id = str(raw.get("id") or raw.get("name") or "").strip()
    if not rule_id:
        raise RuleValidationError("<sin id>", "falta 'id'.")
    table = str(raw.get("table") or raw.get("table_name") or "").strip()
    if not table:
        raise RuleValidationError(rule_id, "falta la tabla.")

    raw_strategy = str(raw.get("resolution_strategy") or "").strip()
    try:
        strategy = ResolutionStrategy(raw_strategy)
    except ValueError as exc:
        raise RuleValidationError(rule_id, f"estrategia desconocida {raw_strategy!r}.") from exc

    return DetectionRule(
        id=rule_id,
        name=str(raw.get("name") or rule_id),
        description=str(raw.get("description") or ""),
        table=table,
        conditions=_parse_conditions(rule_id, raw.get("conditions")),
        resolution_strategy=strategy,
        enabled=_parse_enabled(raw.get("enabled", True)),
    )


def _parse_conditions(rule_id: str, raw_conditions: Any) -> tuple[RuleCondition, ...]:
    if raw_conditions is None or raw_conditions == "":
        return ()
    if isinstance(raw_conditions, str):
        try:
            raw_conditions = json.loads(raw_conditions)
        except json.JSONDecodeError as exc:
            raise RuleValidationError(rule_id, "condiciones no son JSON válido.") from exc
    if not isinstance(raw_conditions, list):
        raise RuleValidationError(rule_id, "las condiciones deben ser una lista.")

    conditions: list[RuleCondition] = []
    for position, item in enumerate(raw_conditions):
        if not isinstance(item, dict):
            raise RuleValidationError(rule_id, f"condición #{position} no es un objeto.")
        field_name = str(item.get("field") or "").strip()
        if not field_name:
            raise RuleValidationError(rule_id, f"condición #{position} sin campo.")
        raw_operator = str(item.get("operator") or "").strip()
        try:
            operator = ConditionOperator(raw_operator)
        except ValueError as exc:
            raise RuleValidationError(rule_id, f"operador desconocido {raw_operator!r}.") from exc
        conditions.append(RuleCondition(field=field_name, operator=operator, value=item.get("value")))
    return tuple(conditions)


def _parse_enabled(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off", ""}
    return bool(value)


class RuleRegistry:
    """Caché explícita de reglas por tabla; sólo se refresca con ``reload()``."""

    def __init__(self, provider: RuleProvider) -> None:
        self._provider = provider
        self._lock = RLock()
        self._rules: list[DetectionRule] | None = None
        self._by_table: dict[str, list[DetectionRule]] = {}
        self._rejected: list[RuleValidationError] = []

    def load_rules(self) -> list[DetectionRule]:
        with self._lock:
            if self._rules is None:
                self._load()
            return list(self._rules or [])

    def reload(self) -> list[DetectionRule]:
        with self._lock:
            self._load()
            return list(self._rules or [])

    def rules_for(self, table: str) -> list[DetectionRule]:
        with self._lock:
            if self._rules is None:
                self._load()
            return list(self._by_table.get(table, []))

    def default_strategy_for(self, table: str) -> ResolutionStrategy:
        rules = self.rules_for(table)
        if not rules:
            return ResolutionStrategy.MANUAL
        return rules[0].resolution_strategy

    @property
    def rejected(self) -> list[RuleValidationError]:
        with self._lock:
            return list(self._rejected)

    def _load(self) -> None:
        raw_rules = self._provider.fetch_rules()
        loaded: list[DetectionRule] = []
        rejected: list[RuleValidationError] = []
        for raw in raw_rules:
            try:
                loaded.append(parse_rule(raw))
            except RuleValidationError as exc:
                rejected.append(exc)
                log_event(
                    logger,
                    "rule_rejected",
                    {"rule_id": exc.rule_id, "reason": str(exc)},
                    level=logging.WARNING,
                )

        by_table: dict[str, list[DetectionRule]] = {}
        for rule in loaded:
            if rule.enabled:
                by_table.setdefault(rule.table, []).append(rule)

        self._rules = loaded
        self._by_table = by_table
        self._rejected = rejected
        logger.info(
            "Reglas de detección cargadas: %s válidas, %s rechazadas",
            len(loaded),
            len(rejected),
        )
