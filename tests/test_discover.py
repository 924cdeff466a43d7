from __future__ import annotations

import sqlite3

import pytest

from skr_pipeline.api.types import Asset, EnhancedTransaction, MintInfo, SignatureInfo
from skr_pipeline.config import AppConfig, DiscoveryConfig
from skr_pipeline.db import store
from skr_pipeline.errors import PermanentError, StageError
from skr_pipeline.pipeline import discover
from skr_pipeline.pipeline.discover import (
    AuthorityTransactionStrategy,
    GroupAssetsStrategy,
    GroupSearchStrategy,
    ProgramAccountStrategy,
    run_discovery,
)


def _setup_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    store.init_db(conn)
    return conn


def _config(**discovery) -> AppConfig:
    settings = {"page_delay_s": 0.0, "page_limit": 2, "signature_page_limit": 3}
    settings.update(discovery)
    return AppConfig(discovery=DiscoveryConfig(**settings))


class FakeOracle:
    """Serves a fixed SGT population and a fixed mint-authority history."""

    def __init__(self, owners=None, signatures=None, failing=()) -> None:
        # mint -> owner
        self.owners = dict(owners or {})
        # newest first
        self.signatures = list(signatures or [])
        self.failing = set(failing)
        self.parsed: list[str] = []

    def _check(self, method: str) -> None:
        if method in self.failing:
            raise PermanentError(f"{method} unavailable")

    def _page(self, page: int, limit: int) -> list[Asset]:
        items = [Asset(id=mint, owner=owner) for mint, owner in sorted(self.owners.items())]
        start = (page - 1) * limit
        return items[start : start + limit]

    def search_assets(self, group_address, page, limit):
        self._check("searchAssets")
        return self._page(page, limit)

    def get_assets_by_group(self, group_address, page, limit):
        self._check("getAssetsByGroup")
        return self._page(page, limit)

    def get_token_accounts(self, program_id, limit, cursor=None):
        self._check("getTokenAccounts")
        accounts = [{"mint": mint, "owner": owner, "amount": 1} for mint, owner in sorted(self.owners.items())]
        accounts.append({"mint": "fungible", "owner": "whale", "amount": 5000})
        accounts.append({"mint": "other-nft", "owner": "collector", "amount": 1})
        return accounts, None

    def get_mint_infos(self, mints):
        self._check("getMultipleAccounts")
        authority = AppConfig().tokens.sgt_mint_authority
        return {
            mint: MintInfo(address=mint, mint_authority=authority if mint in self.owners else "someone-else")
            for mint in mints
        }

    def get_signatures_for_address(self, address, limit, before=None):
        self._check("getSignaturesForAddress")
        start = 0
        if before is not None:
            start = self.signatures.index(before) + 1
        return [SignatureInfo(signature=sig) for sig in self.signatures[start : start + limit]]

    def parse_transactions(self, signatures):
        self._check("parseTransactions")
        signatures = list(signatures)
        self.parsed.extend(signatures)
        return [
            EnhancedTransaction.model_validate(
                {
                    "signature": sig,
                    "type": "TOKEN_MINT",
                    "tokenTransfers": [
                        {"mint": f"mint-{sig}", "toUserAccount": f"recipient-{sig}", "tokenAmount": 1}
                    ],
                }
            )
            for sig in signatures
        ]

    def get_asset_batch(self, asset_ids):
        self._check("getAssetBatch")
        return [Asset(id=mint, owner=self.owners[mint]) for mint in asset_ids if mint in self.owners]

    def get_asset(self, asset_id):
        self._check("getAsset")
        owner = self.owners.get(asset_id)
        return Asset(id=asset_id, owner=owner) if owner else None


def _history(count: int) -> list[str]:
    return [f"s{index}" for index in range(count, 0, -1)]


def test_group_search_pages_until_short_page() -> None:
    oracle = FakeOracle(owners={"m1": "w1", "m2": "w2", "m3": "w3"})
    result = GroupSearchStrategy(oracle, _config()).discover()

    assert result.strategy == "search_assets"
    assert result.complete is True
    assert [row["wallet_address"] for row in result.wallets] == ["w1", "w2", "w3"]
    assert result.wallets[0]["sgt_mint_address"] == "m1"


def test_program_accounts_filters_by_mint_authority() -> None:
    oracle = FakeOracle(owners={"m1": "w1", "m2": "w2"})
    result = ProgramAccountStrategy(oracle, _config()).discover()

    assert {row["wallet_address"] for row in result.wallets} == {"w1", "w2"}
    assert result.complete is True


def test_rerun_with_unchanged_population_adds_nothing() -> None:
    conn = _setup_conn()
    config = _config()
    oracle = FakeOracle(owners={"m1": "w1", "m2": "w2", "m3": "w3"})

    first = run_discovery(config, conn, oracle, strategies=[GroupSearchStrategy(oracle, config)])
    second = run_discovery(config, conn, oracle, strategies=[GroupSearchStrategy(oracle, config)])

    assert first["inserted"] == 3
    assert second["inserted"] == 0
    assert second["deactivated"] == 0
    assert store.count_wallets(conn) == 3
    assert store.get_cursor(conn, discover.CURSOR_KEY) is None


def test_strategy_fallback_uses_next_method() -> None:
    conn = _setup_conn()
    config = _config()
    oracle = FakeOracle(owners={"m1": "w1"}, failing={"searchAssets"})
    strategies = [GroupSearchStrategy(oracle, config), GroupAssetsStrategy(oracle, config)]

    result = run_discovery(config, conn, oracle, strategies=strategies)

    assert result["strategy"] == "assets_by_group"
    assert store.fetch_active_wallets(conn) == ["w1"]


def test_empty_index_falls_back() -> None:
    conn = _setup_conn()
    config = _config()
    oracle = FakeOracle(owners={})
    oracle_with_history = FakeOracle(owners={"mint-s1": "w1"}, signatures=_history(1))
    strategies = [GroupSearchStrategy(oracle, config), AuthorityTransactionStrategy(oracle_with_history, config)]

    result = run_discovery(config, conn, oracle, strategies=strategies)

    assert result["strategy"] == "authority_transactions"
    assert store.fetch_active_wallets(conn) == ["w1"]


def test_all_strategies_failing_records_error_run() -> None:
    conn = _setup_conn()
    config = _config()
    oracle = FakeOracle(failing={"searchAssets", "getAssetsByGroup", "getTokenAccounts", "getSignaturesForAddress"})

    with pytest.raises(StageError) as excinfo:
        run_discovery(config, conn, oracle)

    assert "search_assets" in str(excinfo.value)
    run = conn.execute("SELECT * FROM pipeline_runs ORDER BY id DESC LIMIT 1").fetchone()
    assert run["stage"] == "discover"
    assert run["status"] == "error"
    assert "All discovery strategies failed" in run["notes"]
    assert store.count_wallets(conn) == 0


def test_resumable_scan_processes_only_newer_signatures() -> None:
    conn = _setup_conn()
    config = _config()
    signatures = _history(10)
    owners = {f"mint-{sig}": f"owner-{sig}" for sig in signatures}
    oracle = FakeOracle(owners=owners, signatures=signatures)
    store.set_cursor(conn, discover.CURSOR_KEY, signatures[4])

    result = run_discovery(config, conn, oracle, strategies=[AuthorityTransactionStrategy(oracle, config)])

    assert oracle.parsed == ["s7", "s8", "s9", "s10"]
    assert result["inserted"] == 4
    assert result["cursor"] == "s10"
    assert store.get_cursor(conn, discover.CURSOR_KEY) == "s10"
    assert store.fetch_active_wallets(conn) == ["owner-s10", "owner-s7", "owner-s8", "owner-s9"]


def test_resumable_scan_rerun_leaves_cursor_unchanged() -> None:
    conn = _setup_conn()
    config = _config()
    signatures = _history(6)
    oracle = FakeOracle(owners={f"mint-{sig}": f"owner-{sig}" for sig in signatures}, signatures=signatures)
    strategy = AuthorityTransactionStrategy(oracle, config)

    run_discovery(config, conn, oracle, strategies=[strategy])
    oracle.parsed.clear()
    second = run_discovery(config, conn, oracle, strategies=[strategy])

    assert oracle.parsed == []
    assert second["inserted"] == 0
    assert store.get_cursor(conn, discover.CURSOR_KEY) == "s6"
    assert store.count_wallets(conn) == 6


def test_owner_resolution_falls_back_to_single_lookups() -> None:
    config = _config()
    oracle = FakeOracle(owners={"mint-s1": "holder"}, signatures=_history(2), failing={"getAssetBatch"})

    result = AuthorityTransactionStrategy(oracle, config).discover()

    wallets = {row["wallet_address"]: row["sgt_mint_address"] for row in result.wallets}
    # mint-s2 has no indexed owner, so its transfer recipient is kept.
    assert wallets == {"holder": "mint-s1", "recipient-s2": "mint-s2"}
    assert result.cursor.last_signature == "s2"
    assert result.cursor.backfill_before is None


def test_complete_enumeration_marks_missing_wallets_inactive() -> None:
    conn = _setup_conn()
    config = _config()
    oracle = FakeOracle(owners={"m1": "w1", "m2": "w2", "m3": "w3"})
    run_discovery(config, conn, oracle, strategies=[GroupSearchStrategy(oracle, config)])

    oracle.owners.pop("m2")
    result = run_discovery(config, conn, oracle, strategies=[GroupSearchStrategy(oracle, config)])

    assert result["deactivated"] == 1
    assert store.fetch_active_wallets(conn) == ["w1", "w3"]
    assert store.count_wallets(conn) == 3


def test_scan_cut_short_by_page_cap_resumes_the_gap() -> None:
    conn = _setup_conn()
    config = _config(max_signature_pages=2)
    signatures = _history(10)
    oracle = FakeOracle(owners={f"mint-{sig}": f"owner-{sig}" for sig in signatures}, signatures=signatures)
    strategy = AuthorityTransactionStrategy(oracle, config)
    store.set_cursor(conn, discover.CURSOR_KEY, "s1")

    first = run_discovery(config, conn, oracle, strategies=[strategy])

    assert oracle.parsed == ["s5", "s6", "s7", "s8", "s9", "s10"]
    assert first["cursor"] == "s1"
    assert first["backfill_pending"] is True
    assert store.get_cursor(conn, discover.BACKFILL_BEFORE_KEY) == "s5"

    # A new mint lands while the gap is still open.
    oracle.signatures.insert(0, "s11")
    oracle.owners["mint-s11"] = "owner-s11"
    oracle.parsed.clear()
    second = run_discovery(config, conn, oracle, strategies=[strategy])

    assert oracle.parsed == ["s2", "s3", "s4"]
    assert second["cursor"] == "s10"
    assert second["backfill_pending"] is False
    assert store.get_cursor(conn, discover.BACKFILL_BEFORE_KEY) is None
    assert store.get_cursor(conn, discover.BACKFILL_HEAD_KEY) is None

    oracle.parsed.clear()
    third = run_discovery(config, conn, oracle, strategies=[strategy])

    assert oracle.parsed == ["s11"]
    assert third["cursor"] == "s11"
    assert store.count_wallets(conn) == 10
