from __future__ import annotations

from typing import Any, Iterable, Mapping

from skr_pipeline.config import TokenConfig
from skr_pipeline.utils.numbers import safe_float, safe_int
from skr_pipeline.utils.sorting import ranked

NEW_LABEL = "new"


def pct_change(current: float | None, previous: float | None) -> str | None:
    """Signed day-over-day change such as ``"+12.0%"``; ``None`` without a usable prior value."""
    if current is None or not previous:
        return None
    change = round((current - previous) / previous * 100, 1)
    return f"{change:+.1f}%"


def share_pct(part: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 1)


def holdings_distribution(
    rows: Iterable[Mapping[str, Any]],
    tokens: TokenConfig,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Rank tokens by aggregate USD value; ``value`` is the share of all held value."""
    rows = list(rows)
    total_value = sum(safe_float(row.get("total_value_usd")) for row in rows)
    top = ranked(
        rows,
        key=lambda row: safe_float(row.get("total_value_usd")),
        tie_breaker=lambda row: row.get("mint") or "",
        limit=limit,
    )
    distribution = []
    for index, row in enumerate(top):
        mint = row.get("mint")
        symbol = row.get("symbol") or tokens.symbol_for(mint) or f"Token {index + 1}"
        value_usd = safe_float(row.get("total_value_usd"))
        distribution.append(
            {
                "name": symbol,
                "mint": mint,
                "value": share_pct(value_usd, total_value),
                "totalValueUsd": value_usd,
                "totalAmount": safe_float(row.get("total_amount")),
                "holderCount": safe_int(row.get("holder_count")),
                "color": tokens.colors.get(symbol) or f"hsl({(index * 40) % 360}, 60%, 55%)",
            }
        )
    return distribution


def week_over_week(
    latest_rows: Iterable[Mapping[str, Any]],
    prior_rows: Iterable[Mapping[str, Any]],
    sol_price: float = 0.0,
    limit: int = 15,
) -> list[dict[str, Any]]:
    prior_users = {row["program_id"]: row.get("unique_wallets") for row in prior_rows}
    top = ranked(
        latest_rows,
        key=lambda row: safe_int(row.get("unique_wallets")),
        tie_breaker=lambda row: row["program_id"],
        limit=limit,
    )
    entries = []
    for row in top:
        users = safe_int(row.get("unique_wallets"))
        entries.append(
            {
                "program_id": row["program_id"],
                "name": row.get("program_name") or row["program_id"][:8],
                "category": row.get("category") or "Other",
                "users": users,
                "txCount": safe_int(row.get("tx_count")),
                "volumeUsd": round(safe_float(row.get("volume_sol")) * sol_price, 2),
                "change7d": pct_change(users, prior_users.get(row["program_id"])) or NEW_LABEL,
            }
        )
    return entries


def category_breakdown(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    categories: dict[str, dict[str, int]] = {}
    for row in rows:
        category = row.get("category") or "Other"
        bucket = categories.setdefault(category, {"wallets": 0, "txCount": 0})
        bucket["wallets"] += safe_int(row.get("unique_wallets"))
        bucket["txCount"] += safe_int(row.get("tx_count"))
    total_wallets = sum(bucket["wallets"] for bucket in categories.values())
    breakdown = [
        {
            "category": category,
            "wallets": bucket["wallets"],
            "txCount": bucket["txCount"],
            "percentage": share_pct(bucket["wallets"], total_wallets),
        }
        for category, bucket in categories.items()
    ]
    return ranked(
        breakdown,
        key=lambda entry: entry["wallets"],
        tie_breaker=lambda entry: entry["category"],
    )
