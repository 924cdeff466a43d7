from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from skr_pipeline.api.batching import chunked
from skr_pipeline.api.oracle import OracleClient
from skr_pipeline.api.types import Asset
from skr_pipeline.config import AppConfig
from skr_pipeline.db import store
from skr_pipeline.errors import DiscoveryError, OracleError, StageError
from skr_pipeline.pipeline.common import run_cli, tracked_run
from skr_pipeline.utils.numbers import safe_float
from skr_pipeline.utils.time import utc_today

logger = logging.getLogger(__name__)

STAGE = "discover"
CURSOR_KEY = "authority_scan:last_signature"
BACKFILL_BEFORE_KEY = "authority_scan:backfill_before"
BACKFILL_HEAD_KEY = "authority_scan:backfill_head"


@dataclass
class ScanCursor:
    """Progress of the authority history scan.

    ``last_signature`` is the newest signature below which everything has been
    processed. While a scan stopped at the page cap before reaching it, the
    unprocessed gap lies between ``backfill_before`` (oldest signature processed
    so far) and ``last_signature``; ``backfill_head`` is the newest signature of
    that scan and becomes ``last_signature`` once the gap is closed.
    """

    last_signature: str | None = None
    backfill_before: str | None = None
    backfill_head: str | None = None


@dataclass
class DiscoveryResult:
    strategy: str
    wallets: list[dict[str, str]] = field(default_factory=list)
    cursor: ScanCursor | None = None
    # True when the strategy enumerated the whole population, so wallets
    # missing from it can be marked inactive.
    complete: bool = False


class DiscoveryStrategy:
    name = "base"

    def __init__(self, oracle: OracleClient, config: AppConfig) -> None:
        self.oracle = oracle
        self.config = config

    def discover(self, cursor: ScanCursor | None = None) -> DiscoveryResult:
        raise NotImplementedError

    def _pause(self) -> None:
        delay = self.config.discovery.page_delay_s
        if delay > 0:
            time.sleep(delay)


class GroupIndexStrategy(DiscoveryStrategy):
    """Page through the DAS index of assets in the SGT collection group."""

    def _fetch_page(self, page: int, limit: int) -> list[Asset]:
        raise NotImplementedError

    def discover(self, cursor: ScanCursor | None = None) -> DiscoveryResult:
        settings = self.config.discovery
        limit = settings.page_limit
        owners: dict[str, str] = {}
        complete = False
        page = 1
        while page <= settings.max_pages:
            items = self._fetch_page(page, limit)
            if not items:
                complete = True
                break
            for asset in items:
                if asset.owner and asset.id:
                    owners[asset.owner] = asset.id
            logger.info("%s page %d: %d assets (total wallets %d)", self.name, page, len(items), len(owners))
            if len(items) < limit:
                complete = True
                break
            page += 1
            self._pause()
        else:
            logger.warning("%s stopped at page cap %d", self.name, settings.max_pages)

        if not owners:
            raise DiscoveryError(f"{self.name} returned no assets for group {self.config.tokens.sgt_group_address}")
        return DiscoveryResult(strategy=self.name, wallets=_wallet_rows(owners), complete=complete)


class GroupSearchStrategy(GroupIndexStrategy):
    name = "search_assets"

    def _fetch_page(self, page: int, limit: int) -> list[Asset]:
        return self.oracle.search_assets(self.config.tokens.sgt_group_address, page, limit)


class GroupAssetsStrategy(GroupIndexStrategy):
    name = "assets_by_group"

    def _fetch_page(self, page: int, limit: int) -> list[Asset]:
        return self.oracle.get_assets_by_group(self.config.tokens.sgt_group_address, page, limit)


class ProgramAccountStrategy(DiscoveryStrategy):
    """Scan every Token-2022 account and keep single-unit holdings whose mint
    was created by the SGT mint authority."""

    name = "program_accounts"

    def discover(self, cursor: ScanCursor | None = None) -> DiscoveryResult:
        settings = self.config.discovery
        tokens = self.config.tokens
        owners: dict[str, str] = {}
        page_cursor: str | None = None
        complete = False
        for page in range(1, settings.max_pages + 1):
            accounts, page_cursor = self.oracle.get_token_accounts(
                program_id=tokens.token_2022_program,
                limit=settings.page_limit,
                cursor=page_cursor,
            )
            if not accounts:
                complete = True
                break
            candidates = {
                account["mint"]: account["owner"]
                for account in accounts
                if account.get("mint") and account.get("owner") and safe_float(account.get("amount")) == 1
            }
            for mint_batch in chunked(list(candidates), 100):
                infos = self.oracle.get_mint_infos(mint_batch)
                for mint in mint_batch:
                    info = infos.get(mint)
                    if info is not None and info.mint_authority == tokens.sgt_mint_authority:
                        owners[candidates[mint]] = mint
            logger.info(
                "%s page %d: %d accounts, %d candidates (total wallets %d)",
                self.name,
                page,
                len(accounts),
                len(candidates),
                len(owners),
            )
            if not page_cursor:
                complete = True
                break
            self._pause()
        else:
            logger.warning("%s stopped at page cap %d", self.name, settings.max_pages)

        if not owners:
            raise DiscoveryError(f"{self.name} found no accounts minted by {tokens.sgt_mint_authority}")
        return DiscoveryResult(strategy=self.name, wallets=_wallet_rows(owners), complete=complete)


class AuthorityTransactionStrategy(DiscoveryStrategy):
    """Resumable scan of the mint authority's transaction history.

    Signatures are read newest-first and paging stops at a short page, the
    page cap, or the stored cursor. Only signatures newer than the cursor are
    decoded, oldest first. The cursor moves to the newest signature only once
    everything down to the old cursor has been read; a scan cut short by the
    page cap records where it stopped and the next run resumes from there.
    """

    name = "authority_transactions"

    def discover(self, cursor: ScanCursor | None = None) -> DiscoveryResult:
        state = cursor or ScanCursor()
        signatures, exhausted = self.new_signatures(state.last_signature, before=state.backfill_before)
        head = state.backfill_head if state.backfill_before else None
        if head is None and signatures:
            head = signatures[0]

        if exhausted:
            next_state = ScanCursor(last_signature=head or state.last_signature)
        else:
            next_state = ScanCursor(
                last_signature=state.last_signature,
                backfill_before=signatures[-1],
                backfill_head=head,
            )
            logger.warning(
                "%s: %s not reached, resuming below %s next run",
                self.name,
                state.last_signature or "start of history",
                signatures[-1],
            )

        if not signatures:
            logger.info("%s: no signatures newer than cursor %s", self.name, state.last_signature)
            return DiscoveryResult(strategy=self.name, cursor=next_state)

        recipients = self.mint_recipients(list(reversed(signatures)))
        owners_by_mint = self.resolve_owners(list(recipients))
        owners: dict[str, str] = {}
        unresolved = 0
        for mint, recipient in recipients.items():
            owner = owners_by_mint.get(mint)
            if owner is None:
                unresolved += 1
                owner = recipient
            owners[owner] = mint
        if unresolved:
            logger.warning("%s: %d mints kept their transfer recipient as owner", self.name, unresolved)
        logger.info(
            "%s: %d new signatures, %d candidate mints, %d wallets",
            self.name,
            len(signatures),
            len(recipients),
            len(owners),
        )
        return DiscoveryResult(strategy=self.name, wallets=_wallet_rows(owners), cursor=next_state)

    def new_signatures(self, cursor: str | None, before: str | None = None) -> tuple[list[str], bool]:
        """Signatures newer than ``cursor``, newest first, starting below ``before``.

        The flag is False when the page cap stopped the scan before it reached
        ``cursor`` or the start of the history.
        """
        settings = self.config.discovery
        authority = self.config.tokens.sgt_mint_authority
        collected: list[str] = []
        exhausted = False
        for page_number in range(1, settings.max_signature_pages + 1):
            page = self.oracle.get_signatures_for_address(authority, settings.signature_page_limit, before=before)
            reached_cursor = False
            for info in page:
                if cursor is not None and info.signature == cursor:
                    reached_cursor = True
                    break
                collected.append(info.signature)
            logger.info("%s signature page %d: %d (total %d)", self.name, page_number, len(page), len(collected))
            if reached_cursor or len(page) < settings.signature_page_limit:
                exhausted = True
                break
            before = page[-1].signature
            self._pause()
        else:
            logger.warning("%s stopped at signature page cap %d", self.name, settings.max_signature_pages)
        return collected, exhausted

    def mint_recipients(self, signatures: list[str]) -> dict[str, str]:
        """Mint -> latest recipient for every single-unit token transfer."""
        recipients: dict[str, str] = {}
        for batch in chunked(signatures, self.config.discovery.parse_batch_size):
            for tx in self.oracle.parse_transactions(batch):
                for transfer in tx.token_transfers:
                    if transfer.token_amount == 1 and transfer.mint and transfer.to_user_account:
                        recipients[transfer.mint] = transfer.to_user_account
        return recipients

    def resolve_owners(self, mints: list[str]) -> dict[str, str]:
        owners: dict[str, str] = {}
        for batch in chunked(mints, self.config.discovery.asset_batch_size):
            try:
                assets = self.oracle.get_asset_batch(batch)
            except OracleError as exc:
                logger.warning("getAssetBatch failed (%s), falling back to getAsset per mint", exc)
                assets = self._assets_one_by_one(batch)
            for asset in assets:
                if asset.id and asset.owner:
                    owners[asset.id] = asset.owner
        return owners

    def _assets_one_by_one(self, mints: list[str]) -> list[Asset]:
        assets = []
        for mint in mints:
            try:
                asset = self.oracle.get_asset(mint)
            except OracleError as exc:
                logger.warning("getAsset failed for %s: %s", mint, exc)
                continue
            if asset is not None:
                assets.append(asset)
        return assets


STRATEGIES: dict[str, type[DiscoveryStrategy]] = {
    GroupSearchStrategy.name: GroupSearchStrategy,
    GroupAssetsStrategy.name: GroupAssetsStrategy,
    ProgramAccountStrategy.name: ProgramAccountStrategy,
    AuthorityTransactionStrategy.name: AuthorityTransactionStrategy,
}


def build_strategies(config: AppConfig, oracle: OracleClient) -> list[DiscoveryStrategy]:
    strategies = []
    for name in config.discovery.strategies:
        strategy_cls = STRATEGIES.get(name)
        if strategy_cls is None:
            raise ValueError(f"Unknown discovery strategy {name!r}")
        strategies.append(strategy_cls(oracle, config))
    return strategies


def discover_wallets(strategies: list[DiscoveryStrategy], cursor: ScanCursor | None = None) -> DiscoveryResult:
    errors = []
    for strategy in strategies:
        try:
            return strategy.discover(cursor)
        except (DiscoveryError, OracleError) as exc:
            logger.warning("Discovery via %s failed: %s", strategy.name, exc)
            errors.append(f"{strategy.name}: {exc}")
    raise StageError("All discovery strategies failed. " + "; ".join(errors))


def run_discovery(
    config: AppConfig,
    conn: sqlite3.Connection,
    oracle: OracleClient,
    strategies: list[DiscoveryStrategy] | None = None,
    run_date: date | None = None,
) -> dict[str, Any]:
    day = (run_date or utc_today()).isoformat()
    if strategies is None:
        strategies = build_strategies(config, oracle)

    with tracked_run(conn, STAGE) as run:
        cursor = load_scan_cursor(conn)
        result = discover_wallets(strategies, cursor)
        logger.info("Discovered %d wallets via %s", len(result.wallets), result.strategy)

        inserted = store.upsert_wallets(conn, result.wallets, day, commit=False)
        deactivated = 0
        if result.complete and config.discovery.mark_missing_inactive:
            deactivated = store.mark_wallets_inactive(
                conn, [wallet["wallet_address"] for wallet in result.wallets], commit=False
            )
        cursor_advanced = False
        if result.cursor is not None:
            cursor_advanced = result.cursor.last_signature != cursor.last_signature
            save_scan_cursor(conn, result.cursor, commit=False)
        conn.commit()

        total = store.count_wallets(conn)
        run.records = len(result.wallets)
        run.notes = (
            f"strategy={result.strategy} new={inserted} deactivated={deactivated} "
            f"registry={total} cursor_advanced={cursor_advanced}"
        )
        logger.info("Registry now holds %d wallets (%d new, %d deactivated)", total, inserted, deactivated)

    return {
        "strategy": result.strategy,
        "discovered": len(result.wallets),
        "inserted": inserted,
        "deactivated": deactivated,
        "cursor": result.cursor.last_signature if result.cursor else cursor.last_signature,
        "backfill_pending": bool(result.cursor and result.cursor.backfill_before),
    }


def load_scan_cursor(conn: sqlite3.Connection) -> ScanCursor:
    return ScanCursor(
        last_signature=store.get_cursor(conn, CURSOR_KEY),
        backfill_before=store.get_cursor(conn, BACKFILL_BEFORE_KEY),
        backfill_head=store.get_cursor(conn, BACKFILL_HEAD_KEY),
    )


def save_scan_cursor(conn: sqlite3.Connection, cursor: ScanCursor, commit: bool = True) -> None:
    for key, value in (
        (CURSOR_KEY, cursor.last_signature),
        (BACKFILL_BEFORE_KEY, cursor.backfill_before),
        (BACKFILL_HEAD_KEY, cursor.backfill_head),
    ):
        if value:
            store.set_cursor(conn, key, value, commit=False)
        else:
            store.delete_cursor(conn, key, commit=False)
    if commit:
        conn.commit()


def _wallet_rows(owners: dict[str, str]) -> list[dict[str, str]]:
    return [
        {"wallet_address": wallet, "sgt_mint_address": mint}
        for wallet, mint in sorted(owners.items())
    ]


def main() -> None:
    run_cli(STAGE, lambda config, conn: run_discovery(config, conn, OracleClient(config.oracle)))


if __name__ == "__main__":
    main()
