from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import Any

from skr_pipeline.analytics.estimates import ActivityTally, WalletActivity, scale_factor
from skr_pipeline.analytics.protocols import ProgramMatcher
from skr_pipeline.api.batching import process_batches
from skr_pipeline.api.oracle import OracleClient
from skr_pipeline.config import AppConfig
from skr_pipeline.db import store
from skr_pipeline.errors import OracleError, StageError
from skr_pipeline.pipeline.common import run_cli, tracked_run
from skr_pipeline.utils.time import days_before, utc_now, utc_today

logger = logging.getLogger(__name__)

STAGE = "activity"


def build_sample(conn: sqlite3.Connection, config: AppConfig, day: str) -> list[str]:
    """Recently active wallets first (up to ``recent_share`` of the budget),
    topped up with a uniform random draw from the other active wallets."""
    settings = config.activity
    budget = settings.sample_size
    recent = store.fetch_recently_active_wallets(
        conn,
        days_before(day, settings.recent_days),
        int(budget * settings.recent_share),
    )
    fill = store.fetch_random_active_wallets(conn, budget - len(recent), exclude=recent)
    wallets = list(dict.fromkeys([*recent, *fill]))
    logger.info(
        "Loaded %d wallets for activity scan (%d recently active + %d random)",
        len(wallets),
        len(recent),
        len(fill),
    )
    return wallets


def scan_wallet(
    oracle: OracleClient,
    matcher: ProgramMatcher,
    config: AppConfig,
    wallet: str,
    cutoff_ts: int,
) -> WalletActivity | None:
    """Measure one wallet's recent activity. ``None`` means the wallet could not be read."""
    settings = config.activity
    try:
        signatures = oracle.get_signatures_for_address(wallet, settings.signatures_per_wallet)
    except OracleError as exc:
        logger.warning("Skipping wallet %s: %s", wallet, exc)
        return None

    recent = [info for info in signatures if info.block_time and info.block_time >= cutoff_ts]
    activity = WalletActivity(wallet=wallet, tx_count=len(recent))
    if not recent:
        return activity

    try:
        transactions = oracle.parse_transactions(info.signature for info in recent[: settings.parse_per_wallet])
    except OracleError as exc:
        logger.warning("Could not decode transactions for %s: %s", wallet, exc)
        return activity

    for tx in transactions:
        volume = 0.0
        if tx.is_swap:
            activity.swap_count += 1
            # Native SOL moved in the swap; USD conversion happens at aggregation.
            volume = tx.native_volume_sol()
            activity.swap_volume_sol += volume
        for program_id in matcher.match(tx):
            hit = activity.programs.setdefault(program_id, {"tx_count": 0, "volume_sol": 0.0})
            hit["tx_count"] += 1
            hit["volume_sol"] += volume
    return activity


def dapp_rows(estimate: dict[str, Any], matcher: ProgramMatcher) -> list[dict[str, Any]]:
    rows = []
    for program_id, counts in sorted(estimate["programs"].items()):
        name, category = matcher.describe(program_id)
        rows.append({"program_id": program_id, "program_name": name, "category": category, **counts})
    return rows


def run_activity(
    config: AppConfig,
    conn: sqlite3.Connection,
    oracle: OracleClient,
    run_date: date | None = None,
) -> dict[str, Any]:
    day = (run_date or utc_today()).isoformat()
    settings = config.pipeline
    matcher = ProgramMatcher(config.programs)
    cutoff_ts = int((utc_now() - timedelta(hours=config.activity.window_hours)).timestamp())

    with tracked_run(conn, STAGE) as run:
        wallets = build_sample(conn, config, day)
        if not wallets:
            raise StageError("No active wallets to scan. Run discovery first.")

        results = process_batches(
            wallets,
            settings.wallet_batch_size,
            lambda wallet: scan_wallet(oracle, matcher, config, wallet, cutoff_ts),
            delay_s=settings.batch_delay_s,
            max_workers=settings.max_concurrency,
            label="activity scan",
        )
        tally = ActivityTally()
        for activity in results:
            tally.add(activity)

        population = store.count_wallets(conn, active_only=True)
        factor = scale_factor(population, len(wallets))
        estimate = tally.extrapolate(factor)
        logger.info(
            "Raw: %d active, %d txns, %d swaps. Extrapolated (x%.2f): ~%d active, ~%d txns",
            len(tally.active_wallets),
            tally.tx_count,
            tally.swap_count,
            factor,
            estimate["active_wallets_24h"],
            estimate["total_transactions"],
        )

        store.touch_wallets_active(conn, sorted(tally.active_wallets), day, commit=False)
        store.upsert_snapshot_activity(
            conn,
            day,
            {
                "active_wallets_24h": estimate["active_wallets_24h"],
                "total_transactions": estimate["total_transactions"],
                "swap_count": estimate["swap_count"],
                "swap_volume_sol": estimate["swap_volume_sol"],
                "activity_sample_size": len(wallets),
                "activity_scale_factor": factor,
            },
            commit=False,
        )
        # A rerun for the same day replaces that day's protocol estimates.
        store.clear_dapp_interactions(conn, day, commit=False)
        written = store.upsert_dapp_interactions(conn, day, dapp_rows(estimate, matcher), commit=False)
        conn.commit()

        run.records = tally.tx_count
        run.notes = (
            f"{len(tally.active_wallets)} active wallets from {len(wallets)} sample "
            f"({tally.failed} failed), population {population}, scale_factor={factor:.4f}, "
            f"{written} protocols"
        )

    return {
        "date": day,
        "sample_size": len(wallets),
        "population": population,
        "scale_factor": factor,
        "raw_active_wallets": len(tally.active_wallets),
        **{key: value for key, value in estimate.items() if key != "programs"},
        "protocols": written,
    }


def main() -> None:
    run_cli(STAGE, lambda config, conn: run_activity(config, conn, OracleClient(config.oracle)))


if __name__ == "__main__":
    main()
