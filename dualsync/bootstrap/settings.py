from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dualsync.domain.timestamps import DEFAULT_TIMESTAMP_FIELDS

logger = logging.getLogger(__name__)

ENV_PREFIX = "DUALSYNC_"
SECONDARY_BACKENDS = ("falkordb", "sheets")
LOCK_BACKENDS = ("memory", "sqlite")


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


@dataclass(frozen=True)
class EngineSettings:
    db_path: Path
    primary_db_path: Path
    secondary_backend: str = "falkordb"
    falkor_host: str = "localhost"
    falkor_port: int = 6379
    falkor_graph: str = "dualsync"
    sheets_credentials: Path | None = None
    sheets_spreadsheet_id: str | None = None
    rules_file: Path | None = None
    log_dir: Path | None = None
    timestamp_skew_seconds: float = 1.0
    timestamp_fields: tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS
    resolve_timeout_seconds: float = 20.0
    detect_timeout_seconds: float = 10.0
    lock_timeout_seconds: float = 5.0
    lock_backend: str = "memory"
    lease_seconds: float = 30.0
    read_retries: int = 2
    retry_backoff_seconds: float = 0.2


def _env(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _safe_int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw_value = _env(environ, name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        logger.warning("Valor no entero en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default


def _safe_float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = _env(environ, name)
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning("Valor no numérico en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default
    if value < 0:
        logger.warning("Valor negativo en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default
    return value


def _choice_env(environ: Mapping[str, str], name: str, choices: tuple[str, ...], default: str) -> str:
    raw_value = _env(environ, name)
    if raw_value is None:
        return default
    value = raw_value.lower()
    if value not in choices:
        logger.warning("Valor desconocido en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default
    return value


def _path_env(environ: Mapping[str, str], name: str) -> Path | None:
    raw_value = _env(environ, name)
    return Path(raw_value).expanduser() if raw_value else None


def load_settings(environ: Mapping[str, str] | None = None) -> EngineSettings:
    env = os.environ if environ is None else environ
    runtime_dir = project_root() / "logs" / "runtime"
    db_path = _path_env(env, "DB_PATH") or runtime_dir / "dualsync.db"
    raw_fields = _env(env, "TIMESTAMP_FIELDS")
    timestamp_fields = (
        tuple(name.strip() for name in raw_fields.split(",") if name.strip()) if raw_fields else ()
    ) or DEFAULT_TIMESTAMP_FIELDS
    return EngineSettings(
        db_path=db_path,
        primary_db_path=_path_env(env, "PRIMARY_DB_PATH") or db_path,
        secondary_backend=_choice_env(env, "SECONDARY_BACKEND", SECONDARY_BACKENDS, "falkordb"),
        falkor_host=_env(env, "FALKOR_HOST") or "localhost",
        falkor_port=_safe_int_env(env, "FALKOR_PORT", 6379),
        falkor_graph=_env(env, "FALKOR_GRAPH") or "dualsync",
        sheets_credentials=_path_env(env, "SHEETS_CREDENTIALS"),
        sheets_spreadsheet_id=_env(env, "SHEETS_SPREADSHEET_ID"),
        rules_file=_path_env(env, "RULES_FILE"),
        log_dir=_path_env(env, "LOG_DIR"),
        timestamp_skew_seconds=_safe_float_env(env, "TIMESTAMP_SKEW_SECONDS", 1.0),
        timestamp_fields=timestamp_fields,
        resolve_timeout_seconds=_safe_float_env(env, "RESOLVE_TIMEOUT_SECONDS", 20.0),
        detect_timeout_seconds=_safe_float_env(env, "DETECT_TIMEOUT_SECONDS", 10.0),
        lock_timeout_seconds=_safe_float_env(env, "LOCK_TIMEOUT_SECONDS", 5.0),
        lock_backend=_choice_env(env, "LOCK_BACKEND", LOCK_BACKENDS, "memory"),
        lease_seconds=_safe_float_env(env, "LEASE_SECONDS", 30.0),
        read_retries=max(0, _safe_int_env(env, "READ_RETRIES", 2)),
        retry_backoff_seconds=_safe_float_env(env, "RETRY_BACKOFF_SECONDS", 0.2),
    )


def resolve_log_dir(preferred: Path | None = None) -> Path:
    candidates: list[Path] = []
    if preferred is not None:
        candidates.append(preferred)
    env_dir = os.environ.get(f"{ENV_PREFIX}LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "dualsync" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback
