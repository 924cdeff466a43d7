from __future__ import annotations

import sqlite3

import pytest

from skr_pipeline.api.types import LAMPORTS_PER_SOL, TokenAccount
from skr_pipeline.config import AppConfig, PipelineSettings
from skr_pipeline.db import store
from skr_pipeline.errors import PermanentError, StageError
from skr_pipeline.pipeline.snapshot import run_snapshot

TOKENS = AppConfig().tokens
SOL = TOKENS.sol_mint
SKR = TOKENS.skr_mint
USDC = TOKENS.known_tokens["USDC"]


def _setup_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    store.init_db(conn)
    return conn


def _config(**pipeline) -> AppConfig:
    settings = {"batch_delay_s": 0.0, "max_concurrency": 2, "wallet_batch_size": 2}
    settings.update(pipeline)
    return AppConfig(pipeline=PipelineSettings(**settings))


def _register(conn: sqlite3.Connection, *addresses: str) -> None:
    store.upsert_wallets(
        conn,
        [{"wallet_address": address, "sgt_mint_address": f"sgt-{address}"} for address in addresses],
        "2025-01-01",
    )


class FakeOracle:
    def __init__(self, sol=None, tokens=None, failing=()) -> None:
        # wallet -> SOL
        self.sol = dict(sol or {})
        # wallet -> [(program_id, mint, amount, decimals)]
        self.tokens = dict(tokens or {})
        self.failing = set(failing)

    def get_multiple_accounts(self, addresses):
        return [
            {"lamports": int(self.sol[address] * LAMPORTS_PER_SOL)} if address in self.sol else None
            for address in addresses
        ]

    def get_token_accounts_by_owner(self, owner, program_id):
        if owner in self.failing:
            raise PermanentError(f"cannot read {owner}")
        return [
            TokenAccount(mint=mint, owner=owner, amount=amount, decimals=decimals)
            for program, mint, amount, decimals in self.tokens.get(owner, [])
            if program == program_id
        ]

    def get_token_account_balance(self, address):
        return 250.0


class FakePrices:
    def __init__(self, prices) -> None:
        self.prices = prices
        self.requested = []

    def get_prices(self, mints):
        self.requested = list(mints)
        return {mint: self.prices[mint] for mint in self.requested if mint in self.prices}

    def get_market_data(self, coin_id=None):
        return {"market_cap": 20_000.0, "volume_24h": 500.0, "circulating_supply": 1_000.0}


def _oracle() -> FakeOracle:
    return FakeOracle(
        sol={"w1": 2.0, "w2": 1.0},
        tokens={
            "w1": [(TOKENS.token_2022_program, SKR, 100.0, 6)],
            "w2": [(TOKENS.spl_token_program, USDC, 50.0, 6), (TOKENS.spl_token_program, "dust", 0.0, 0)],
        },
    )


PRICES = {SOL: 150.0, SKR: 0.02, USDC: 1.0}


def test_empty_registry_fails_with_error_run() -> None:
    conn = _setup_conn()

    with pytest.raises(StageError) as excinfo:
        run_snapshot(_config(), conn, _oracle(), FakePrices(PRICES))

    assert "No active wallets" in str(excinfo.value)
    run = conn.execute("SELECT * FROM pipeline_runs").fetchone()
    assert run["stage"] == "snapshot"
    assert run["status"] == "error"
    assert "No active wallets" in run["notes"]
    assert store.fetch_latest_snapshots(conn) == []


def test_snapshot_writes_holdings_totals_and_metrics() -> None:
    conn = _setup_conn()
    _register(conn, "w1", "w2")
    prices = FakePrices(PRICES)

    result = run_snapshot(_config(), conn, _oracle(), prices, run_date=None)

    day = result["date"]
    snapshot = store.fetch_snapshot(conn, day)
    assert snapshot["total_sgt_holders"] == 2
    assert snapshot["total_sol_held"] == pytest.approx(3.0)
    assert snapshot["total_value_usd"] == pytest.approx(502.0)
    assert snapshot["sol_price"] == pytest.approx(150.0)
    assert snapshot["skr_price"] == pytest.approx(0.02)
    assert snapshot["holdings_sample_size"] == 2
    assert snapshot["active_wallets_24h"] is None
    assert SOL in prices.requested and SKR in prices.requested

    w1 = {row["token_mint"]: row for row in store.fetch_wallet_holdings(conn, "w1")}
    assert set(w1) == {SOL, SKR}
    assert w1[SOL]["amount"] == pytest.approx(2.0)
    assert w1[SOL]["value_usd"] == pytest.approx(300.0)
    assert w1[SKR]["token_symbol"] == "SKR"
    assert [row["token_mint"] for row in store.fetch_wallet_holdings(conn, "w2")] == sorted([SOL, USDC])

    metrics = store.fetch_latest_skr_metrics(conn)
    assert metrics["holders_count"] == 1
    assert metrics["market_cap"] == pytest.approx(20_000.0)
    assert metrics["staked_pct"] == pytest.approx(0.0)

    run = conn.execute("SELECT * FROM pipeline_runs").fetchone()
    assert run["status"] == "success"
    assert run["records"] == result["holdings_written"] == 4


def test_failed_wallet_keeps_last_known_holdings() -> None:
    conn = _setup_conn()
    _register(conn, "w1", "w2")
    store.replace_wallet_holdings(conn, {"w2": [{"token_mint": "OLD", "amount": 1.0, "value_usd": 5.0}]})
    oracle = _oracle()
    oracle.failing.add("w2")

    result = run_snapshot(_config(), conn, oracle, FakePrices(PRICES))

    assert result["failed"] == 1
    assert [row["token_mint"] for row in store.fetch_wallet_holdings(conn, "w2")] == ["OLD"]
    assert {row["token_mint"] for row in store.fetch_wallet_holdings(conn, "w1")} == {SOL, SKR}


def test_downsampled_totals_are_extrapolated() -> None:
    conn = _setup_conn()
    _register(conn, "w1", "w2", "w3", "w4")
    oracle = FakeOracle(sol={wallet: 1.0 for wallet in ("w1", "w2", "w3", "w4")})

    result = run_snapshot(_config(holdings_sample_size=2), conn, oracle, FakePrices(PRICES))

    snapshot = store.fetch_snapshot(conn, result["date"])
    assert result["wallets"] == 2
    assert snapshot["holdings_sample_size"] == 2
    assert snapshot["total_sgt_holders"] == 4
    assert snapshot["total_sol_held"] == pytest.approx(4.0)
    assert snapshot["total_value_usd"] == pytest.approx(600.0)


def test_rerun_updates_same_day_in_place() -> None:
    conn = _setup_conn()
    _register(conn, "w1", "w2")
    first = run_snapshot(_config(), conn, _oracle(), FakePrices(PRICES))
    store.upsert_snapshot_activity(conn, first["date"], {"active_wallets_24h": 77})

    run_snapshot(_config(), conn, _oracle(), FakePrices({**PRICES, SOL: 200.0}))

    rows = conn.execute("SELECT * FROM daily_snapshots").fetchall()
    assert len(rows) == 1
    assert rows[0]["sol_price"] == pytest.approx(200.0)
    assert rows[0]["active_wallets_24h"] == 77


def test_staked_share_uses_vault_balance() -> None:
    conn = _setup_conn()
    _register(conn, "w1")
    base = AppConfig()
    config = AppConfig(
        pipeline=PipelineSettings(batch_delay_s=0.0),
        tokens=base.tokens.model_copy(update={"skr_staking_vault": "vault"}),
    )

    run_snapshot(config, conn, _oracle(), FakePrices(PRICES))

    metrics = store.fetch_latest_skr_metrics(conn)
    assert metrics["total_staked"] == pytest.approx(250.0)
    assert metrics["staked_pct"] == pytest.approx(25.0)
