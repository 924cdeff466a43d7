from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Iterable, Mapping

from skr_pipeline.db.schema import SCHEMA_SQL
from skr_pipeline.utils.time import iso_now

SNAPSHOT_BALANCE_COLUMNS = (
    "total_sgt_holders",
    "total_sol_held",
    "total_value_usd",
    "skr_price",
    "skr_market_cap",
    "skr_staked_pct",
    "sol_price",
    "holdings_sample_size",
)

SNAPSHOT_ACTIVITY_COLUMNS = (
    "active_wallets_24h",
    "total_transactions",
    "swap_count",
    "swap_volume_sol",
    "activity_sample_size",
    "activity_scale_factor",
)


def get_connection(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _ensure_column(conn, "daily_snapshots", "holdings_sample_size", "INTEGER")
    _ensure_column(conn, "daily_snapshots", "activity_sample_size", "INTEGER")
    _ensure_column(conn, "daily_snapshots", "activity_scale_factor", "REAL")
    _ensure_column(conn, "daily_snapshots", "updated_at", "TEXT")
    _ensure_column(conn, "wallet_holdings", "decimals", "INTEGER")
    _ensure_column(conn, "skr_metrics", "total_staked", "REAL")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        return


# Pipeline run log


def start_run(conn: sqlite3.Connection, stage: str) -> int:
    cursor = conn.execute(
        "INSERT INTO pipeline_runs (stage, status, started_at) VALUES (?, 'running', ?)",
        (stage, iso_now()),
    )
    conn.commit()
    return int(cursor.lastrowid)


def finish_run(
    conn: sqlite3.Connection,
    run_id: int,
    status: str,
    records: int | None = None,
    notes: str | None = None,
) -> bool:
    if status not in ("success", "error"):
        raise ValueError(f"unknown run status {status!r}")
    cursor = conn.execute(
        """
        UPDATE pipeline_runs
        SET status = ?, finished_at = ?, records = ?, notes = ?
        WHERE id = ? AND status = 'running'
        """,
        (status, iso_now(), records, notes, run_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fetch_run(conn: sqlite3.Connection, run_id: int) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)).fetchone()
    return dict(row) if row else None


def fetch_recent_runs(
    conn: sqlite3.Connection,
    limit: int = 10,
    exclude_id: int | None = None,
) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT stage, status, started_at, finished_at, records
        FROM pipeline_runs
        WHERE id IS NOT ?
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (exclude_id, limit),
    ).fetchall()
    return [dict(row) for row in rows]


# Wallet registry


def upsert_wallets(
    conn: sqlite3.Connection,
    wallets: Iterable[Mapping[str, str]],
    seen_date: str,
    commit: bool = True,
) -> int:
    """Insert new wallets and refresh known ones. Returns the number of new rows."""
    rows = [
        (wallet["wallet_address"], wallet["sgt_mint_address"], seen_date)
        for wallet in wallets
        if wallet.get("wallet_address") and wallet.get("sgt_mint_address")
    ]
    before = count_wallets(conn)
    conn.executemany(
        """
        INSERT INTO seeker_wallets (wallet_address, sgt_mint_address, first_seen, is_active)
        VALUES (?, ?, ?, 1)
        ON CONFLICT(wallet_address) DO UPDATE SET
            sgt_mint_address = excluded.sgt_mint_address,
            is_active = 1
        WHERE seeker_wallets.sgt_mint_address != excluded.sgt_mint_address
           OR seeker_wallets.is_active != 1
        """,
        rows,
    )
    inserted = count_wallets(conn) - before
    if commit:
        conn.commit()
    return inserted


def mark_wallets_inactive(
    conn: sqlite3.Connection,
    keep_addresses: Iterable[str],
    commit: bool = True,
) -> int:
    keep = set(keep_addresses)
    stale = [(address,) for address in fetch_active_wallets(conn) if address not in keep]
    conn.executemany("UPDATE seeker_wallets SET is_active = 0 WHERE wallet_address = ?", stale)
    if commit:
        conn.commit()
    return len(stale)


def count_wallets(conn: sqlite3.Connection, active_only: bool = False) -> int:
    query = "SELECT COUNT(*) AS count FROM seeker_wallets"
    if active_only:
        query += " WHERE is_active = 1"
    return int(conn.execute(query).fetchone()["count"])


def fetch_wallet(conn: sqlite3.Connection, address: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM seeker_wallets WHERE wallet_address = ?", (address,)).fetchone()
    return dict(row) if row else None


def fetch_active_wallets(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        "SELECT wallet_address FROM seeker_wallets WHERE is_active = 1 ORDER BY wallet_address"
    ).fetchall()
    return [row["wallet_address"] for row in rows]


def fetch_recently_active_wallets(conn: sqlite3.Connection, since_date: str, limit: int) -> list[str]:
    rows = conn.execute(
        """
        SELECT wallet_address FROM seeker_wallets
        WHERE is_active = 1 AND last_active >= ?
        ORDER BY last_active DESC, wallet_address
        LIMIT ?
        """,
        (since_date, limit),
    ).fetchall()
    return [row["wallet_address"] for row in rows]


def fetch_random_active_wallets(
    conn: sqlite3.Connection,
    limit: int,
    exclude: Iterable[str] = (),
) -> list[str]:
    if limit <= 0:
        return []
    excluded = set(exclude)
    rows = conn.execute(
        "SELECT wallet_address FROM seeker_wallets WHERE is_active = 1 ORDER BY RANDOM() LIMIT ?",
        (limit + len(excluded),),
    ).fetchall()
    picked = [row["wallet_address"] for row in rows if row["wallet_address"] not in excluded]
    return picked[:limit]


def touch_wallets_active(
    conn: sqlite3.Connection,
    addresses: Iterable[str],
    day: str,
    commit: bool = True,
) -> None:
    conn.executemany(
        "UPDATE seeker_wallets SET last_active = ?, is_active = 1 WHERE wallet_address = ?",
        [(day, address) for address in addresses],
    )
    if commit:
        conn.commit()


# Cursor state


def get_cursor(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM cursor_state WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_cursor(conn: sqlite3.Connection, key: str, value: str, commit: bool = True) -> None:
    conn.execute(
        """
        INSERT INTO cursor_state (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, value, iso_now()),
    )
    if commit:
        conn.commit()


def delete_cursor(conn: sqlite3.Connection, key: str, commit: bool = True) -> None:
    conn.execute("DELETE FROM cursor_state WHERE key = ?", (key,))
    if commit:
        conn.commit()


# Holdings


def replace_wallet_holdings(
    conn: sqlite3.Connection,
    holdings_by_wallet: Mapping[str, Iterable[Mapping[str, Any]]],
    commit: bool = True,
) -> int:
    """Make each listed wallet's holding set exactly the given rows.

    Wallets not present in ``holdings_by_wallet`` keep their last-known rows.
    """
    now = iso_now()
    written = 0
    for wallet, holdings in holdings_by_wallet.items():
        rows = [
            (
                wallet,
                holding["token_mint"],
                holding.get("token_symbol"),
                holding.get("amount"),
                holding.get("decimals"),
                holding.get("value_usd"),
                now,
            )
            for holding in holdings
        ]
        mints = [row[1] for row in rows]
        placeholders = ",".join("?" for _ in mints)
        if mints:
            conn.execute(
                f"DELETE FROM wallet_holdings WHERE wallet_address = ? AND token_mint NOT IN ({placeholders})",
                (wallet, *mints),
            )
        else:
            conn.execute("DELETE FROM wallet_holdings WHERE wallet_address = ?", (wallet,))
        conn.executemany(
            """
            INSERT INTO wallet_holdings
            (wallet_address, token_mint, token_symbol, amount, decimals, value_usd, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(wallet_address, token_mint) DO UPDATE SET
                token_symbol = excluded.token_symbol,
                amount = excluded.amount,
                decimals = excluded.decimals,
                value_usd = excluded.value_usd,
                updated_at = excluded.updated_at
            """,
            rows,
        )
        written += len(rows)
    if commit:
        conn.commit()
    return written


def fetch_wallet_holdings(conn: sqlite3.Connection, wallet: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM wallet_holdings WHERE wallet_address = ? ORDER BY token_mint",
        (wallet,),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_holdings_by_token(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT token_mint AS mint,
               MAX(token_symbol) AS symbol,
               SUM(amount) AS total_amount,
               SUM(value_usd) AS total_value_usd,
               COUNT(DISTINCT wallet_address) AS holder_count
        FROM wallet_holdings
        WHERE value_usd > 0
        GROUP BY token_mint
        """
    ).fetchall()
    return [dict(row) for row in rows]


# Daily snapshots


def _upsert_snapshot(
    conn: sqlite3.Connection,
    day: str,
    values: Mapping[str, Any],
    allowed: tuple[str, ...],
) -> None:
    columns = [column for column in allowed if column in values]
    if not columns:
        raise ValueError("no snapshot columns to write")
    now = iso_now()
    insert_columns = ", ".join(["date", *columns, "created_at", "updated_at"])
    placeholders = ", ".join("?" for _ in range(len(columns) + 3))
    updates = ", ".join(f"{column} = excluded.{column}" for column in columns)
    conn.execute(
        f"""
        INSERT INTO daily_snapshots ({insert_columns}) VALUES ({placeholders})
        ON CONFLICT(date) DO UPDATE SET {updates}, updated_at = excluded.updated_at
        """,
        (day, *[values[column] for column in columns], now, now),
    )


def upsert_snapshot_balances(
    conn: sqlite3.Connection,
    day: str,
    values: Mapping[str, Any],
    commit: bool = True,
) -> None:
    _upsert_snapshot(conn, day, values, SNAPSHOT_BALANCE_COLUMNS)
    if commit:
        conn.commit()


def upsert_snapshot_activity(
    conn: sqlite3.Connection,
    day: str,
    values: Mapping[str, Any],
    commit: bool = True,
) -> None:
    _upsert_snapshot(conn, day, values, SNAPSHOT_ACTIVITY_COLUMNS)
    if commit:
        conn.commit()


def fetch_snapshot(conn: sqlite3.Connection, day: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM daily_snapshots WHERE date = ?", (day,)).fetchone()
    return dict(row) if row else None


def fetch_latest_snapshots(conn: sqlite3.Connection, limit: int = 2) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM daily_snapshots ORDER BY date DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_snapshot_history(conn: sqlite3.Connection, since_date: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM daily_snapshots WHERE date >= ? ORDER BY date ASC",
        (since_date,),
    ).fetchall()
    return [dict(row) for row in rows]


# Token metrics


def upsert_skr_metrics(
    conn: sqlite3.Connection,
    day: str,
    metrics: Mapping[str, Any],
    commit: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO skr_metrics
        (date, price, market_cap, volume_24h, circulating_supply, total_staked, staked_pct, holders_count)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(date) DO UPDATE SET
            price = excluded.price,
            market_cap = excluded.market_cap,
            volume_24h = excluded.volume_24h,
            circulating_supply = excluded.circulating_supply,
            total_staked = excluded.total_staked,
            staked_pct = excluded.staked_pct,
            holders_count = excluded.holders_count
        """,
        (
            day,
            metrics.get("price"),
            metrics.get("market_cap"),
            metrics.get("volume_24h"),
            metrics.get("circulating_supply"),
            metrics.get("total_staked"),
            metrics.get("staked_pct"),
            metrics.get("holders_count"),
        ),
    )
    if commit:
        conn.commit()


def fetch_latest_skr_metrics(conn: sqlite3.Connection) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM skr_metrics ORDER BY date DESC LIMIT 1").fetchone()
    return dict(row) if row else {}


def fetch_skr_history(conn: sqlite3.Connection, since_date: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT date, price, market_cap, volume_24h, staked_pct
        FROM skr_metrics WHERE date >= ? ORDER BY date ASC
        """,
        (since_date,),
    ).fetchall()
    return [dict(row) for row in rows]


# Protocol interactions


def clear_dapp_interactions(conn: sqlite3.Connection, day: str, commit: bool = True) -> int:
    cursor = conn.execute("DELETE FROM dapp_interactions WHERE date = ?", (day,))
    if commit:
        conn.commit()
    return cursor.rowcount


def upsert_dapp_interactions(
    conn: sqlite3.Connection,
    day: str,
    rows: Iterable[Mapping[str, Any]],
    commit: bool = True,
) -> int:
    values = [
        (
            day,
            row["program_id"],
            row.get("program_name"),
            row.get("category"),
            row.get("unique_wallets"),
            row.get("tx_count"),
            row.get("volume_sol"),
        )
        for row in rows
    ]
    conn.executemany(
        """
        INSERT INTO dapp_interactions
        (date, program_id, program_name, category, unique_wallets, tx_count, volume_sol)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(date, program_id) DO UPDATE SET
            program_name = excluded.program_name,
            category = excluded.category,
            unique_wallets = excluded.unique_wallets,
            tx_count = excluded.tx_count,
            volume_sol = excluded.volume_sol
        """,
        values,
    )
    if commit:
        conn.commit()
    return len(values)


def latest_dapp_date(conn: sqlite3.Connection) -> str | None:
    row = conn.execute("SELECT MAX(date) AS date FROM dapp_interactions").fetchone()
    return row["date"] if row else None


def dapp_date_on_or_before(conn: sqlite3.Connection, day: str) -> str | None:
    row = conn.execute(
        "SELECT MAX(date) AS date FROM dapp_interactions WHERE date <= ?",
        (day,),
    ).fetchone()
    return row["date"] if row else None


def fetch_dapp_interactions(conn: sqlite3.Connection, day: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM dapp_interactions WHERE date = ? ORDER BY unique_wallets DESC, program_id",
        (day,),
    ).fetchall()
    return [dict(row) for row in rows]
