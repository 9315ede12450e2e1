from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, TextIO

from dualsync.bootstrap.container import EngineContainer, build_container
from dualsync.bootstrap.logging import configure_logging, install_exception_hook
from dualsync.bootstrap.settings import EngineSettings, load_settings, resolve_log_dir
from dualsync.core.errors import AppError
from dualsync.domain.models import CLOSED_STATUSES, Resolution
from dualsync.infrastructure.db import get_connection
from dualsync.infrastructure.migrations import MigrationRunner

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[EngineSettings], EngineContainer]

EXIT_OK = 0
EXIT_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dualsync",
        description="Detecta y resuelve divergencias entre el store primario y el secundario.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    detect = commands.add_parser("detect", help="Compara uno o varios registros de una tabla")
    detect.add_argument("table")
    detect.add_argument("record_ids", nargs="+", metavar="ID")

    resolve = commands.add_parser("resolve", help="Aplica una resolución a un conflicto")
    resolve.add_argument("conflict_id")
    resolve.add_argument("--strategy", required=True)
    resolve.add_argument("--data", default=None, help="Objeto JSON con los campos resueltos (merge/manual)")
    resolve.add_argument("--delete", action="store_true", help="El resultado resuelto es 'registro ausente'")
    resolve.add_argument("--by", default="operator", help="Identidad que resuelve")
    resolve.add_argument("--notes", default=None)

    commands.add_parser("retry-failed", help="Reintenta los conflictos fallidos con su resolución guardada")

    auto = commands.add_parser("auto-resolve", help="Resuelve con la estrategia por defecto de la regla")
    auto.add_argument("conflict_id")
    auto.add_argument("--by", default="auto")

    commands.add_parser("list", help="Lista conflictos sin resolver (más recientes primero)")

    show = commands.add_parser("show", help="Muestra un conflicto")
    show.add_argument("conflict_id")

    commands.add_parser("metrics", help="Métricas de conflictos y operativas")

    purge = commands.add_parser("purge", help="Borra conflictos resueltos antiguos")
    purge.add_argument("--days", type=int, default=30)

    migrate = commands.add_parser("migrate", help="Aplica migraciones pendientes del ledger")
    migrate.add_argument("--status", action="store_true", help="Sólo muestra el estado")
    return parser


def _emit(stream: TextIO, payload: Any) -> None:
    stream.write(json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str) + "\n")


def _parse_data(raw: str | None) -> dict[str, Any]:
    if raw is None:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"--data no es JSON válido: {exc}") from exc
    if not isinstance(data, dict):
        raise argparse.ArgumentTypeError("--data debe ser un objeto JSON.")
    return data


def _run_migrate(args: argparse.Namespace, settings: EngineSettings, stdout: TextIO) -> int:
    connection = get_connection(settings.db_path)
    try:
        runner = MigrationRunner(connection)
        if not args.status:
            runner.apply_all()
        for item in runner.status():
            _emit(stdout, item)
    finally:
        connection.close()
    return EXIT_OK


def _dispatch(args: argparse.Namespace, container: EngineContainer, stdout: TextIO) -> int:
    service = container.service
    if args.command == "detect":
        sweep = service.detect_many(args.table, args.record_ids)
        for conflict in sweep.conflicts:
            _emit(stdout, conflict.to_dict())
        for record_id, error in sweep.failures.items():
            _emit(stdout, {"record_id": record_id, "error": error})
        return EXIT_ERROR if sweep.failures else EXIT_OK
    if args.command == "resolve":
        resolution = Resolution(
            strategy=args.strategy,
            resolved_data=_parse_data(args.data),
            resolved_by=args.by,
            notes=args.notes,
            delete_record=args.delete,
        )
        _emit(stdout, service.resolve_conflict(args.conflict_id, resolution).to_dict())
        return EXIT_OK
    if args.command == "retry-failed":
        outcomes = service.retry_failed()
        for conflict in outcomes:
            _emit(stdout, conflict.to_dict())
        return EXIT_OK if all(conflict.status in CLOSED_STATUSES for conflict in outcomes) else EXIT_ERROR
    if args.command == "auto-resolve":
        _emit(stdout, service.auto_resolve(args.conflict_id, resolved_by=args.by).to_dict())
        return EXIT_OK
    if args.command == "list":
        for conflict in service.get_unresolved_conflicts():
            _emit(stdout, conflict.to_dict())
        return EXIT_OK
    if args.command == "show":
        _emit(stdout, service.get_conflict(args.conflict_id).to_dict())
        return EXIT_OK
    if args.command == "metrics":
        _emit(stdout, {"conflicts": service.get_metrics().to_dict(), "operational": service.get_operational_metrics()})
        return EXIT_OK
    if args.command == "purge":
        _emit(stdout, {"purged": service.purge_closed(older_than_days=args.days)})
        return EXIT_OK
    raise ValueError(f"Comando no soportado: {args.command}")


def main(
    argv: list[str] | None = None,
    *,
    container_factory: ContainerFactory = build_container,
    stdout: TextIO | None = None,
    configure_logs: bool = True,
) -> int:
    out = stdout or sys.stdout
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    if configure_logs:
        log_dir = resolve_log_dir(settings.log_dir)
        configure_logging(log_dir)
        install_exception_hook(log_dir)

    if args.command == "migrate":
        return _run_migrate(args, settings, out)

    container = container_factory(settings)
    try:
        return _dispatch(args, container, out)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except AppError as exc:
        logger.warning("Comando %s fallido: %s", args.command, exc)
        _emit(out, {"error": str(exc), "error_type": type(exc).__name__})
        return EXIT_ERROR
    finally:
        container.close()
    return EXIT_ERROR
