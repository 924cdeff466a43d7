from __future__ import annotations

import logging
import random
import sqlite3
from datetime import date
from typing import Any

import requests

from skr_pipeline.analytics.estimates import extrapolate, scale_factor
from skr_pipeline.api.batching import chunked, process_batches
from skr_pipeline.api.oracle import OracleClient
from skr_pipeline.api.prices import PriceClient
from skr_pipeline.api.types import LAMPORTS_PER_SOL
from skr_pipeline.config import AppConfig
from skr_pipeline.db import store
from skr_pipeline.errors import OracleError, StageError
from skr_pipeline.pipeline.common import run_cli, tracked_run
from skr_pipeline.utils.time import utc_today

logger = logging.getLogger(__name__)

STAGE = "snapshot"
SOL_DECIMALS = 9

# mint -> {"amount": float, "decimals": int}
TokenMap = dict[str, dict[str, Any]]


def load_wallets(conn: sqlite3.Connection, sample_size: int = 0) -> list[str]:
    wallets = store.fetch_active_wallets(conn)
    logger.info("Loaded %d active wallets", len(wallets))
    if sample_size > 0 and len(wallets) > sample_size:
        random.shuffle(wallets)
        wallets = wallets[:sample_size]
        logger.info("Sampling %d wallets for holdings scan", sample_size)
    return wallets


def fetch_sol_balances(oracle: OracleClient, wallets: list[str], config: AppConfig) -> dict[str, float]:
    """SOL per wallet via getMultipleAccounts; accounts that do not exist count as 0."""
    settings = config.pipeline
    batches = chunked(wallets, min(settings.balance_batch_size, 100))

    def fetch_batch(batch: list[str]) -> dict[str, float]:
        accounts = oracle.get_multiple_accounts(batch)
        return {
            wallet: ((account or {}).get("lamports") or 0) / LAMPORTS_PER_SOL
            for wallet, account in zip(batch, accounts)
        }

    balances: dict[str, float] = {}
    for result in process_batches(
        batches,
        settings.max_concurrency,
        fetch_batch,
        delay_s=settings.batch_delay_s,
        max_workers=settings.max_concurrency,
        label="sol balance batches",
    ):
        balances.update(result)
    return balances


def fetch_wallet_tokens(oracle: OracleClient, wallet: str, config: AppConfig) -> TokenMap | None:
    tokens = config.tokens
    holdings: TokenMap = {}
    try:
        for program_id in (tokens.spl_token_program, tokens.token_2022_program):
            for account in oracle.get_token_accounts_by_owner(wallet, program_id):
                if account.amount <= 0:
                    continue
                entry = holdings.setdefault(account.mint, {"amount": 0.0, "decimals": account.decimals})
                entry["amount"] += account.amount
    except OracleError as exc:
        logger.warning("Skipping holdings for %s: %s", wallet, exc)
        return None
    return holdings


def fetch_token_holdings(
    oracle: OracleClient,
    wallets: list[str],
    config: AppConfig,
) -> dict[str, TokenMap]:
    """Holdings for every wallet whose fetch succeeded. Failed wallets are absent."""
    settings = config.pipeline
    results = process_batches(
        wallets,
        settings.wallet_batch_size,
        lambda wallet: (wallet, fetch_wallet_tokens(oracle, wallet, config)),
        delay_s=settings.batch_delay_s,
        max_workers=settings.max_concurrency,
        label="wallet holdings",
    )
    return {wallet: holdings for wallet, holdings in results if holdings is not None}


def fetch_skr_metrics(
    oracle: OracleClient,
    prices: PriceClient,
    config: AppConfig,
    price_map: dict[str, float],
) -> dict[str, float]:
    tokens = config.tokens
    metrics = {
        "price": price_map.get(tokens.skr_mint, 0.0),
        "market_cap": 0.0,
        "volume_24h": 0.0,
        "circulating_supply": 0.0,
        "total_staked": 0.0,
        "staked_pct": 0.0,
    }
    try:
        metrics.update(prices.get_market_data())
    except requests.RequestException as exc:
        logger.warning("Market data fetch failed, using price only: %s", exc)

    if tokens.skr_staking_vault:
        try:
            metrics["total_staked"] = oracle.get_token_account_balance(tokens.skr_staking_vault)
        except OracleError as exc:
            logger.warning("Staking vault balance unavailable: %s", exc)
    if metrics["circulating_supply"] > 0:
        metrics["staked_pct"] = round(metrics["total_staked"] / metrics["circulating_supply"] * 100, 4)
    return metrics


def holding_rows(
    holdings: dict[str, TokenMap],
    balances: dict[str, float],
    price_map: dict[str, float],
    config: AppConfig,
) -> dict[str, list[dict[str, Any]]]:
    """Per-wallet rows for ``wallet_holdings``; native SOL is folded into the wrapped SOL mint."""
    tokens = config.tokens
    rows_by_wallet: dict[str, list[dict[str, Any]]] = {}
    for wallet, token_map in holdings.items():
        merged = {mint: dict(entry) for mint, entry in token_map.items()}
        native = balances.get(wallet, 0.0)
        if native > 0:
            sol_entry = merged.setdefault(tokens.sol_mint, {"amount": 0.0, "decimals": SOL_DECIMALS})
            sol_entry["amount"] += native
        rows_by_wallet[wallet] = [
            {
                "token_mint": mint,
                "token_symbol": tokens.symbol_for(mint),
                "amount": entry["amount"],
                "decimals": entry["decimals"],
                "value_usd": entry["amount"] * price_map.get(mint, 0.0),
            }
            for mint, entry in sorted(merged.items())
        ]
    return rows_by_wallet


def portfolio_value(
    holdings: dict[str, TokenMap],
    balances: dict[str, float],
    price_map: dict[str, float],
    sol_price: float,
) -> float:
    token_value = sum(
        entry["amount"] * price_map.get(mint, 0.0)
        for token_map in holdings.values()
        for mint, entry in token_map.items()
    )
    return token_value + sum(balances.values()) * sol_price


def run_snapshot(
    config: AppConfig,
    conn: sqlite3.Connection,
    oracle: OracleClient,
    prices: PriceClient,
    run_date: date | None = None,
) -> dict[str, Any]:
    day = (run_date or utc_today()).isoformat()
    tokens = config.tokens

    with tracked_run(conn, STAGE) as run:
        wallets = load_wallets(conn, config.pipeline.holdings_sample_size)
        if not wallets:
            raise StageError("No active wallets in registry. Run discovery first.")
        active_total = store.count_wallets(conn, active_only=True)
        scale = scale_factor(active_total, len(wallets))

        balances = fetch_sol_balances(oracle, wallets, config)
        sampled_sol = sum(balances.values())
        logger.info("SOL held by %d sampled wallets: %.2f", len(wallets), sampled_sol)

        holdings = fetch_token_holdings(oracle, wallets, config)
        failed = len(wallets) - len(holdings)
        logger.info("Collected holdings for %d wallets (%d failed)", len(holdings), failed)

        mints = {mint for token_map in holdings.values() for mint in token_map}
        mints.update({tokens.sol_mint, tokens.skr_mint})
        price_map = prices.get_prices(sorted(mints))
        sol_price = price_map.get(tokens.sol_mint, 0.0)

        metrics = fetch_skr_metrics(oracle, prices, config, price_map)
        skr_holders = sum(
            1 for token_map in holdings.values() if token_map.get(tokens.skr_mint, {}).get("amount", 0) > 0
        )
        metrics["holders_count"] = extrapolate(skr_holders, scale)

        total_value = portfolio_value(holdings, balances, price_map, sol_price) * scale
        total_sol = sampled_sol * scale
        logger.info("Estimated portfolio value $%.2fM (scale x%.2f)", total_value / 1e6, scale)

        rows_by_wallet = holding_rows(holdings, balances, price_map, config)
        written = store.replace_wallet_holdings(conn, rows_by_wallet, commit=False)
        store.upsert_snapshot_balances(
            conn,
            day,
            {
                "total_sgt_holders": store.count_wallets(conn),
                "total_sol_held": total_sol,
                "total_value_usd": total_value,
                "skr_price": metrics["price"],
                "skr_market_cap": metrics["market_cap"],
                "skr_staked_pct": metrics["staked_pct"],
                "sol_price": sol_price,
                "holdings_sample_size": len(wallets),
            },
            commit=False,
        )
        store.upsert_skr_metrics(conn, day, metrics, commit=False)
        conn.commit()

        run.records = written
        run.notes = f"{len(holdings)}/{len(wallets)} wallets scanned of {active_total} active, {failed} failed"

    return {
        "date": day,
        "wallets": len(wallets),
        "failed": failed,
        "holdings_written": written,
        "total_sol_held": total_sol,
        "total_value_usd": total_value,
    }


def main() -> None:
    run_cli(
        STAGE,
        lambda config, conn: run_snapshot(
            config, conn, OracleClient(config.oracle), PriceClient(config.prices)
        ),
    )


if __name__ == "__main__":
    main()
