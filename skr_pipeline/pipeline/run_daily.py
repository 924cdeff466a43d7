from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Any

from skr_pipeline.api.oracle import OracleClient
from skr_pipeline.api.prices import PriceClient
from skr_pipeline.config import AppConfig
from skr_pipeline.pipeline.activity import run_activity
from skr_pipeline.pipeline.aggregate import run_aggregate
from skr_pipeline.pipeline.common import run_cli
from skr_pipeline.pipeline.discover import run_discovery
from skr_pipeline.pipeline.snapshot import run_snapshot
from skr_pipeline.utils.time import utc_today

logger = logging.getLogger(__name__)


def run_all(
    config: AppConfig,
    conn: sqlite3.Connection,
    oracle: OracleClient | None = None,
    prices: PriceClient | None = None,
    run_date: date | None = None,
) -> dict[str, Any]:
    """Discovery, Snapshot, Activity, then Aggregate. The first fatal stage stops the run."""
    oracle = oracle or OracleClient(config.oracle)
    prices = prices or PriceClient(config.prices)
    run_date = run_date or utc_today()

    logger.info("Discovering wallets")
    discovery = run_discovery(config, conn, oracle, run_date=run_date)

    logger.info("Taking daily snapshot")
    snapshot = run_snapshot(config, conn, oracle, prices, run_date=run_date)

    logger.info("Scanning wallet activity")
    activity = run_activity(config, conn, oracle, run_date=run_date)

    logger.info("Aggregating dashboard")
    aggregate = run_aggregate(config, conn, as_of=run_date)

    logger.info(
        "Run summary discovered=%s new=%s snapshot_wallets=%s active_24h=%s oracle_retries=%s "
        "rate_limited=%s output=%s",
        discovery["discovered"],
        discovery["inserted"],
        snapshot["wallets"],
        activity["active_wallets_24h"],
        oracle.retry_count,
        oracle.rate_limited_count,
        aggregate["output_path"],
    )
    return {
        "discover": discovery,
        "snapshot": snapshot,
        "activity": activity,
        "aggregate": {key: value for key, value in aggregate.items() if key != "dashboard"},
    }


def main() -> None:
    run_cli("run_daily", lambda config, conn: run_all(config, conn))


if __name__ == "__main__":
    main()
