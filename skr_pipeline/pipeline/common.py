from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

from skr_pipeline.config import AppConfig, load_config
from skr_pipeline.db import store

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    stage: str
    run_id: int
    records: int = 0
    notes: str | None = None


@contextmanager
def tracked_run(conn: sqlite3.Connection, stage: str) -> Iterator[RunRecord]:
    """Bracket a stage with a ``pipeline_runs`` row.

    Uncommitted writes are rolled back before the run is marked ``error`` so a
    failed stage leaves prior data intact.
    """
    run = RunRecord(stage=stage, run_id=store.start_run(conn, stage))
    logger.info("Starting %s (run %d)", stage, run.run_id)
    try:
        yield run
    except Exception as exc:
        conn.rollback()
        store.finish_run(conn, run.run_id, "error", run.records, str(exc) or exc.__class__.__name__)
        raise
    store.finish_run(conn, run.run_id, "success", run.records, run.notes)
    logger.info("Finished %s records=%d %s", stage, run.records, run.notes or "")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def open_store(config: AppConfig) -> sqlite3.Connection:
    conn = store.get_connection(Path(config.pipeline.db_path))
    store.init_db(conn)
    return conn


def run_cli(stage: str, body: Callable[[AppConfig, sqlite3.Connection], Any]) -> None:
    config = load_config()
    setup_logging(config.log_level)
    conn = open_store(config)
    try:
        body(config, conn)
    except Exception:  # noqa: BLE001
        logger.exception("Stage %s failed", stage)
        raise SystemExit(1)
    finally:
        conn.close()
