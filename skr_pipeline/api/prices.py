from __future__ import annotations

import logging
from typing import Any, Iterable

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from skr_pipeline.config import PriceConfig
from skr_pipeline.utils.numbers import safe_float

logger = logging.getLogger(__name__)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, requests.HTTPError):
        if exc.response is None:
            return True
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, (requests.Timeout, requests.ConnectionError))


class PriceClient:
    def __init__(self, config: PriceConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.timeout = (5, config.request_timeout_s)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        retry=retry_if_exception(_should_retry),
        reraise=True,
    )
    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        """USD price per mint. Mints the price API cannot resolve are left out."""
        unique = list(dict.fromkeys(mint for mint in mints if mint))
        prices: dict[str, float] = {}
        batch_size = self.config.batch_size
        for start in range(0, len(unique), batch_size):
            batch = unique[start : start + batch_size]
            try:
                payload = self._get_json(self.config.jupiter_url, params={"ids": ",".join(batch)})
            except requests.RequestException as exc:
                logger.warning("Price fetch failed for batch of %d: %s", len(batch), exc)
                continue
            prices.update(_extract_prices(payload))
        logger.info("Fetched prices for %d of %d tokens", len(prices), len(unique))
        return prices

    def get_market_data(self, coin_id: str | None = None) -> dict[str, float]:
        coin = coin_id or self.config.coingecko_coin_id
        url = f"{self.config.coingecko_url.rstrip('/')}/coins/{coin}"
        payload = self._get_json(
            url,
            params={
                "localization": "false",
                "tickers": "false",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        market = payload.get("market_data") if isinstance(payload, dict) else None
        if not isinstance(market, dict):
            return {}
        return {
            "market_cap": safe_float((market.get("market_cap") or {}).get("usd")),
            "volume_24h": safe_float((market.get("total_volume") or {}).get("usd")),
            "circulating_supply": safe_float(market.get("circulating_supply")),
        }


def _extract_prices(payload: Any) -> dict[str, float]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return {}
    prices = {}
    for mint, info in data.items():
        if not isinstance(info, dict):
            continue
        price = safe_float(info.get("price"))
        if price > 0:
            prices[mint] = price
    return prices
