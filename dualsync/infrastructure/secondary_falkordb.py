from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

from falkordb import FalkorDB
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from dualsync.core.deadline import Deadline
from dualsync.core.errors import DeadlineExceededError
from dualsync.domain.errors import StoreUnavailableError, StoreWriteError
from dualsync.domain.models import Record
from dualsync.domain.timestamps import format_iso

logger = logging.getLogger(__name__)

ID_PROPERTY = "id"


_LABEL = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def node_label(table: str) -> str:
    """Etiqueta de nodo para la tabla; el nombre se usa tal cual.

    Un nombre que no sea ya un identificador openCypher se rechaza: reescribirlo
    haría que dos tablas distintas compartieran nodos.
    """
    if not _LABEL.match(table):
        raise StoreWriteError("secondary", f"Nombre de tabla no válido como etiqueta: {table!r}.")
    return table


def _to_property(value: Any) -> Any:
    """Los nodos sólo admiten escalares y listas de escalares."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, datetime):
        return format_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (list, tuple)) and all(
        item is None or isinstance(item, (str, bool, int, float)) for item in value
    ):
        return list(value)
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


class FalkorDBSecondaryStore:
    """Store secundario en grafo: un nodo por registro, etiqueta = tabla.

    ``MERGE (n:Tabla {id: $id}) SET n += $props`` sobrescribe los campos dados;
    una propiedad a ``null`` desaparece del nodo. Los valores anidados se guardan
    como JSON y sólo se decodifican en las columnas declaradas en ``json_fields``.
    """

    name = "secondary"

    def __init__(self, graph: Any, *, json_fields: Mapping[str, tuple[str, ...]] | None = None) -> None:
        self._graph = graph
        self._json_fields = {table: tuple(fields) for table, fields in (json_fields or {}).items()}

    @classmethod
    def connect(
        cls,
        host: str = "localhost",
        port: int = 6379,
        graph_name: str = "dualsync",
        *,
        json_fields: Mapping[str, tuple[str, ...]] | None = None,
    ) -> "FalkorDBSecondaryStore":
        db = FalkorDB(host=host, port=port)
        return cls(db.select_graph(graph_name), json_fields=json_fields)

    def read(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> Record | None:
        label = node_label(table)
        rows = self._query(
            f"MATCH (n:{label} {{{ID_PROPERTY}: $id}}) RETURN n LIMIT 1",
            {"id": record_id},
            deadline,
            f"read({table}/{record_id})",
            transient=True,
        )
        if not rows or not rows[0]:
            return None
        node = rows[0][0]
        props = dict(node.properties) if hasattr(node, "properties") else dict(node)
        props.setdefault(ID_PROPERTY, record_id)
        return self._decode(table, props)

    def write(self, table: str, record_id: str, fields: Record, *, deadline: Deadline | None = None) -> None:
        label = node_label(table)
        props = {name: _to_property(value) for name, value in fields.items() if name != ID_PROPERTY}
        self._query(
            f"MERGE (n:{label} {{{ID_PROPERTY}: $id}}) SET n += $props RETURN n",
            {"id": record_id, "props": props},
            deadline,
            f"write({table}/{record_id})",
            transient=False,
        )
        logger.debug("Secundario: escrito %s/%s (%s campos)", table, record_id, len(props))

    def delete(self, table: str, record_id: str, *, deadline: Deadline | None = None) -> None:
        label = node_label(table)
        self._query(
            f"MATCH (n:{label} {{{ID_PROPERTY}: $id}}) DETACH DELETE n",
            {"id": record_id},
            deadline,
            f"delete({table}/{record_id})",
            transient=False,
        )
        logger.debug("Secundario: borrado %s/%s", table, record_id)

    def _query(
        self,
        cypher: str,
        params: dict[str, Any],
        deadline: Deadline | None,
        operation: str,
        *,
        transient: bool,
    ) -> list[Any]:
        timeout_ms: int | None = None
        if deadline is not None:
            deadline.check(f"secondary.{operation}")
            remaining = deadline.remaining()
            if remaining is not None:
                timeout_ms = max(1, int(remaining * 1000))
        try:
            if timeout_ms is None:
                result = self._graph.query(cypher, params)
            else:
                result = self._graph.query(cypher, params, timeout=timeout_ms)
        except RedisTimeoutError as exc:
            raise DeadlineExceededError(f"Plazo agotado durante secondary.{operation}.") from exc
        except RedisConnectionError as exc:
            raise StoreUnavailableError("secondary", f"{operation}: {exc}") from exc
        except RedisError as exc:
            if "timed out" in str(exc).lower():
                raise DeadlineExceededError(f"Plazo agotado durante secondary.{operation}.") from exc
            if transient:
                raise StoreUnavailableError("secondary", f"{operation}: {exc}") from exc
            raise StoreWriteError("secondary", f"{operation}: {exc}") from exc
        return result.result_set if hasattr(result, "result_set") else []

    def _decode(self, table: str, props: dict[str, Any]) -> Record:
        for name in self._json_fields.get(table, ()):
            raw = props.get(name)
            if isinstance(raw, str):
                try:
                    props[name] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Propiedad JSON %s.%s con contenido no válido", table, name)
        return props
