from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from dualsync.core.metrics import metrics_registry
from dualsync.infrastructure.migrations import run_migrations


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def reset_operational_metrics() -> None:
    metrics_registry.reset()
    yield
    metrics_registry.reset()
