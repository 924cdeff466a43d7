from __future__ import annotations

from pathlib import Path

from skr_pipeline.config import load_config
from skr_pipeline.db import store


def main() -> None:
    config = load_config()
    conn = store.get_connection(Path(config.pipeline.db_path))
    store.init_db(conn)
    snapshots = store.fetch_latest_snapshots(conn, limit=1)
    runs = store.fetch_recent_runs(conn, limit=config.aggregate.pipeline_health_limit)
    registry = store.count_wallets(conn)
    active = store.count_wallets(conn, active_only=True)
    conn.close()

    print(f"registry_wallets: {registry} (active {active})")
    if not snapshots:
        print("No snapshots found.")
    else:
        latest = snapshots[0]
        print(f"latest_snapshot: {latest['date']}")
        print(f"active_wallets_24h: {latest.get('active_wallets_24h') or 0}")
        print(f"total_transactions: {latest.get('total_transactions') or 0}")
        print(f"total_sol_held: {_fmt(latest.get('total_sol_held'), 2)}")
        print(f"total_value_usd: {_fmt(latest.get('total_value_usd'), 2)}")
        print(f"activity_scale_factor: {_fmt(latest.get('activity_scale_factor'), 4)}")
    print("recent_runs:")
    for run in runs:
        print(
            f"- {run['stage']} {run['status']} started={run['started_at']} "
            f"finished={run.get('finished_at') or 'n/a'} records={run.get('records') or 0}"
        )


def _fmt(value: float | None, digits: int) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{digits}f}"


if __name__ == "__main__":
    main()
