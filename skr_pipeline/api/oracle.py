from __future__ import annotations

import itertools
import json
import logging
import random
import time
from typing import Any, Iterable

import requests
from pydantic import ValidationError

from skr_pipeline.api.types import Asset, EnhancedTransaction, MintInfo, SignatureInfo, TokenAccount
from skr_pipeline.config import OracleConfig
from skr_pipeline.errors import PermanentError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)


class OracleClient:
    """JSON-RPC, DAS and enhanced-transaction calls against the Helius oracle.

    Every call goes through :meth:`call`, which owns the retry policy:

    * HTTP 429 sleeps ``2**n`` seconds plus up to 500ms of jitter and is
      retried without spending the generic retry budget (bounded separately
      by ``max_rate_limit_retries``);
    * other transient failures (5xx, timeouts, connection errors) sleep
      ``2**attempt * 0.5`` seconds and are retried ``retry_max`` times;
    * JSON-RPC ``error`` members and other 4xx answers raise
      :class:`PermanentError` immediately.
    """

    def __init__(self, config: OracleConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.timeout = (config.request_timeout_s, config.request_timeout_s)
        self.retry_max = config.retry_max
        self.max_rate_limit_retries = config.max_rate_limit_retries
        self.retry_count = 0
        self.rate_limited_count = 0
        self._ids = itertools.count(1)

    @property
    def rpc_endpoint(self) -> str:
        return _with_api_key(self.config.rpc_url.rstrip("/") + "/", self.config.api_key)

    @property
    def transactions_endpoint(self) -> str:
        return _with_api_key(f"{self.config.api_url.rstrip('/')}/v0/transactions", self.config.api_key)

    def call(self, url: str, payload: Any) -> Any:
        attempt = 0
        rate_limited = 0
        while True:
            try:
                return self._post(url, payload)
            except RateLimitedError:
                self.rate_limited_count += 1
                if rate_limited >= self.max_rate_limit_retries:
                    raise
                delay = 2**rate_limited + random.uniform(0, 0.5)
                rate_limited += 1
                logger.warning("Rate limited, waiting %.1fs", delay)
                time.sleep(delay)
            except TransientError as exc:
                if attempt >= self.retry_max:
                    raise
                delay = 2**attempt * 0.5
                attempt += 1
                self.retry_count += 1
                logger.warning("Attempt %d failed: %s. Retrying in %.1fs", attempt, exc, delay)
                time.sleep(delay)

    def _post(self, url: str, payload: Any) -> Any:
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"network error: {exc}") from exc
        status = response.status_code
        if status == 429:
            raise RateLimitedError("HTTP 429", status=status)
        if status >= 500:
            raise TransientError(f"HTTP {status}", status=status)
        if status >= 400:
            body = (response.text or "")[:300]
            raise PermanentError(f"HTTP {status}: {body}", code=status)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentError(f"Undecodable response body from {url.split('?')[0]}") from exc

    def rpc(self, method: str, params: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": f"skr-{next(self._ids)}",
            "method": method,
            "params": params,
        }
        data = self.call(self.rpc_endpoint, payload)
        if not isinstance(data, dict):
            raise PermanentError(f"RPC error [{method}]: unexpected envelope")
        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            raise PermanentError(f"RPC error [{method}]: {json.dumps(error)}", code=code)
        return data.get("result")

    # DAS asset index

    def search_assets(self, group_address: str, page: int, limit: int) -> list[Asset]:
        result = self.rpc(
            "searchAssets",
            {"grouping": ["collection", group_address], "page": page, "limit": limit},
        )
        return _assets(result)

    def get_assets_by_group(self, group_address: str, page: int, limit: int) -> list[Asset]:
        result = self.rpc(
            "getAssetsByGroup",
            {"groupKey": "collection", "groupValue": group_address, "page": page, "limit": limit},
        )
        return _assets(result)

    def get_asset(self, asset_id: str) -> Asset | None:
        result = self.rpc("getAsset", {"id": asset_id})
        if not isinstance(result, dict):
            return None
        return Asset.from_das(result)

    def get_asset_batch(self, asset_ids: list[str]) -> list[Asset]:
        result = self.rpc("getAssetBatch", {"ids": asset_ids})
        if not isinstance(result, list):
            return []
        return [Asset.from_das(item) for item in result if isinstance(item, dict)]

    def get_token_accounts(
        self,
        program_id: str | None = None,
        owner: str | None = None,
        limit: int = 1000,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {"limit": limit, "displayOptions": {}}
        if program_id:
            params["programId"] = program_id
        if owner:
            params["owner"] = owner
        if cursor:
            params["cursor"] = cursor
        result = self.rpc("getTokenAccounts", params) or {}
        accounts = result.get("token_accounts") if isinstance(result, dict) else None
        next_cursor = result.get("cursor") if isinstance(result, dict) else None
        return [item for item in accounts or [] if isinstance(item, dict)], next_cursor

    # Ledger

    def get_slot(self) -> int:
        return int(self.rpc("getSlot", []))

    def get_account_info(self, address: str) -> dict[str, Any] | None:
        result = self.rpc("getAccountInfo", [address, {"encoding": "jsonParsed"}])
        return (result or {}).get("value")

    def get_signatures_for_address(
        self,
        address: str,
        limit: int,
        before: str | None = None,
    ) -> list[SignatureInfo]:
        options: dict[str, Any] = {"limit": limit, "commitment": "confirmed"}
        if before:
            options["before"] = before
        result = self.rpc("getSignaturesForAddress", [address, options])
        try:
            return [SignatureInfo.model_validate(item) for item in result or [] if isinstance(item, dict)]
        except ValidationError as exc:
            # Paging needs every entry of the page.
            raise PermanentError(f"Malformed signature page for {address}: {exc.error_count()} errors") from exc

    def get_multiple_accounts(self, addresses: list[str]) -> list[dict[str, Any] | None]:
        result = self.rpc(
            "getMultipleAccounts",
            [addresses, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        values = (result or {}).get("value") or []
        accounts: list[dict[str, Any] | None] = [
            value if isinstance(value, dict) else None for value in values
        ]
        # Pad so callers can zip against the request.
        accounts.extend([None] * (len(addresses) - len(accounts)))
        return accounts

    def get_mint_infos(self, mints: list[str]) -> dict[str, MintInfo]:
        infos: dict[str, MintInfo] = {}
        for mint, payload in zip(mints, self.get_multiple_accounts(mints)):
            info = MintInfo.from_parsed(mint, payload)
            if info is not None:
                infos[mint] = info
        return infos

    def get_token_accounts_by_owner(self, owner: str, program_id: str) -> list[TokenAccount]:
        result = self.rpc(
            "getTokenAccountsByOwner",
            [owner, {"programId": program_id}, {"encoding": "jsonParsed"}],
        )
        accounts = []
        for item in (result or {}).get("value") or []:
            if not isinstance(item, dict):
                continue
            account = TokenAccount.from_parsed(item)
            if account is not None:
                accounts.append(account)
        return accounts

    def get_token_account_balance(self, address: str) -> float:
        result = self.rpc("getTokenAccountBalance", [address])
        value = (result or {}).get("value") or {}
        ui_amount = value.get("uiAmount")
        if ui_amount is not None:
            return float(ui_amount)
        decimals = int(value.get("decimals") or 0)
        return float(value.get("amount") or 0) / (10**decimals)

    # Enhanced transactions (REST)

    def parse_transactions(self, signatures: Iterable[str]) -> list[EnhancedTransaction]:
        signatures = list(signatures)
        if not signatures:
            return []
        data = self.call(self.transactions_endpoint, {"transactions": signatures})
        if not isinstance(data, list):
            return []
        transactions = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                transactions.append(EnhancedTransaction.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping undecodable transaction %s: %s", item.get("signature"), exc.errors()[0]["msg"])
        return transactions


def _assets(result: Any) -> list[Asset]:
    if not isinstance(result, dict):
        return []
    items = result.get("items")
    if not isinstance(items, list):
        return []
    return [Asset.from_das(item) for item in items if isinstance(item, dict)]


def _with_api_key(url: str, api_key: str) -> str:
    if not api_key:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}api-key={api_key}"
