from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from dualsync.core.errors import InfraError


class JsonFileRuleProvider:
    """Reglas desde un fichero JSON: lista de objetos o ``{"rules": [...]}``."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def fetch_rules(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InfraError(f"No se pudo leer el fichero de reglas {self._path}: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("rules", [])
        if not isinstance(payload, list):
            raise InfraError(f"El fichero de reglas {self._path} debe contener una lista.")
        return [item if isinstance(item, dict) else {"id": "", "raw": item} for item in payload]
