from __future__ import annotations

import logging
import sqlite3
from datetime import date
from pathlib import Path
from typing import Any

from skr_pipeline.analytics.metrics import category_breakdown, holdings_distribution, pct_change, week_over_week
from skr_pipeline.config import AppConfig
from skr_pipeline.db import store
from skr_pipeline.pipeline.common import run_cli, tracked_run
from skr_pipeline.utils.io import minified_path, write_json_atomic
from skr_pipeline.utils.numbers import safe_float, safe_int
from skr_pipeline.utils.time import days_before, iso_now, utc_today

logger = logging.getLogger(__name__)

STAGE = "aggregate"


def overview(conn: sqlite3.Connection, today: str) -> dict[str, Any]:
    snapshots = store.fetch_latest_snapshots(conn, limit=2)
    latest = snapshots[0] if snapshots else {}
    previous = snapshots[1] if len(snapshots) > 1 else {}
    return {
        "totalDevices": store.count_wallets(conn),
        "activeWallets24h": safe_int(latest.get("active_wallets_24h")),
        "activeWalletsChange": pct_change(latest.get("active_wallets_24h"), previous.get("active_wallets_24h")),
        "totalTransactions": safe_int(latest.get("total_transactions")),
        "txChange": pct_change(latest.get("total_transactions"), previous.get("total_transactions")),
        "totalValueUsd": safe_float(latest.get("total_value_usd")),
        "valueChange": pct_change(latest.get("total_value_usd"), previous.get("total_value_usd")),
        "totalSolHeld": safe_float(latest.get("total_sol_held")),
        "tokenPrice": safe_float(latest.get("skr_price")),
        "tokenMarketCap": safe_float(latest.get("skr_market_cap")),
        "solPrice": safe_float(latest.get("sol_price")),
        "tokenStakedPct": safe_float(latest.get("skr_staked_pct")),
        "activityScaleFactor": safe_float(latest.get("activity_scale_factor")),
        "lastUpdated": latest.get("updated_at") or latest.get("created_at") or today,
    }


def daily_activity(conn: sqlite3.Connection, since: str) -> list[dict[str, Any]]:
    series = []
    for row in store.fetch_snapshot_history(conn, since):
        sol_price = safe_float(row.get("sol_price"))
        series.append(
            {
                "date": row["date"],
                "activeWallets": safe_int(row.get("active_wallets_24h")),
                "transactions": safe_int(row.get("total_transactions")),
                "swapCount": safe_int(row.get("swap_count")),
                "swapVolume": round(safe_float(row.get("swap_volume_sol")) * sol_price, 2),
                "totalValue": safe_float(row.get("total_value_usd")),
                "tokenPrice": safe_float(row.get("skr_price")),
                "solPrice": sol_price,
            }
        )
    return series


def protocol_sections(conn: sqlite3.Connection, config: AppConfig) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Top protocols with week-over-week change, and the category split, for the latest day."""
    latest_date = store.latest_dapp_date(conn)
    if latest_date is None:
        return [], []
    latest_rows = store.fetch_dapp_interactions(conn, latest_date)
    prior_date = store.dapp_date_on_or_before(conn, days_before(latest_date, config.aggregate.week_over_week_days))
    prior_rows = store.fetch_dapp_interactions(conn, prior_date) if prior_date else []

    snapshot = store.fetch_snapshot(conn, latest_date) or {}
    sol_price = safe_float(snapshot.get("sol_price"))
    if not sol_price:
        latest = store.fetch_latest_snapshots(conn, limit=1)
        sol_price = safe_float(latest[0].get("sol_price")) if latest else 0.0

    top = week_over_week(latest_rows, prior_rows, sol_price=sol_price, limit=config.aggregate.top_dapps)
    return top, category_breakdown(latest_rows)


def build_dashboard(
    conn: sqlite3.Connection,
    config: AppConfig,
    as_of: date | None = None,
    exclude_run_id: int | None = None,
) -> dict[str, Any]:
    settings = config.aggregate
    today = (as_of or utc_today()).isoformat()
    since = days_before(today, settings.history_days)
    top_dapps, categories = protocol_sections(conn, config)
    return {
        "generatedAt": iso_now(),
        "overview": overview(conn, today),
        "dailyActivity": daily_activity(conn, since),
        "holdingsDistribution": holdings_distribution(
            store.fetch_holdings_by_token(conn),
            config.tokens,
            limit=settings.top_holdings,
        ),
        "topDapps": top_dapps,
        "categoryBreakdown": categories,
        "tokenEconomy": {
            "current": store.fetch_latest_skr_metrics(conn),
            "history": store.fetch_skr_history(conn, since),
        },
        "pipelineHealth": store.fetch_recent_runs(
            conn,
            limit=settings.pipeline_health_limit,
            exclude_id=exclude_run_id,
        ),
    }


def write_dashboard(dashboard: dict[str, Any], output_path: Path) -> tuple[Path, Path]:
    write_json_atomic(output_path, dashboard, indent=2)
    min_path = minified_path(output_path)
    write_json_atomic(min_path, dashboard, indent=None)
    logger.info("Dashboard written to %s (minified %s)", output_path, min_path)
    return output_path, min_path


def run_aggregate(
    config: AppConfig,
    conn: sqlite3.Connection,
    as_of: date | None = None,
) -> dict[str, Any]:
    output_path = Path(config.aggregate.output_path)
    with tracked_run(conn, STAGE) as run:
        dashboard = build_dashboard(conn, config, as_of=as_of, exclude_run_id=run.run_id)
        write_dashboard(dashboard, output_path)

        summary = dashboard["overview"]
        run.records = len(dashboard["dailyActivity"])
        run.notes = (
            f"{len(dashboard['topDapps'])} protocols, "
            f"{len(dashboard['holdingsDistribution'])} tokens, {run.records} days"
        )
        logger.info(
            "Devices=%d active24h=%d txns=%d value=$%.2fM token_price=%s",
            summary["totalDevices"],
            summary["activeWallets24h"],
            summary["totalTransactions"],
            summary["totalValueUsd"] / 1e6,
            summary["tokenPrice"],
        )
    return {"output_path": str(output_path), "days": run.records, "dashboard": dashboard}


def main() -> None:
    run_cli(STAGE, lambda config, conn: run_aggregate(config, conn))


if __name__ == "__main__":
    main()
