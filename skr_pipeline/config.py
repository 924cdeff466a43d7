from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class OracleConfig(FrozenModel):
    api_key: str = ""
    rpc_url: str = "https://mainnet.helius-rpc.com"
    api_url: str = "https://api-mainnet.helius-rpc.com"
    request_timeout_s: int = 30
    retry_max: int = 3
    max_rate_limit_retries: int = 8


class PriceConfig(FrozenModel):
    jupiter_url: str = "https://api.jup.ag/price/v2"
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    coingecko_coin_id: str = "seeker"
    batch_size: int = 100
    request_timeout_s: int = 20


class TokenConfig(FrozenModel):
    sgt_mint_authority: str = "GT2zuHVaZQYZSyQMgJPLzvkmyztfyXg2NJunqFp4p3A4"
    sgt_group_address: str = "GT22s89nU4iWFkNXj1Bw6uYhJJWDRPpShHt4Bk8f99Te"
    token_2022_program: str = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
    spl_token_program: str = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
    known_tokens: Dict[str, str] = {
        "SOL": "So11111111111111111111111111111111111111112",
        "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        "JUP": "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
        "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
        "RAY": "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",
        "SKR": "SKRbvo6Gf7GondiT3BbTfuRDPqLWei4j2Qy2NPGZhW3",
    }
    skr_staking_vault: Optional[str] = None
    colors: Dict[str, str] = {
        "SOL": "#9945FF",
        "SKR": "#14F195",
        "USDC": "#2775CA",
        "USDT": "#26A17B",
        "JUP": "#FE7D44",
        "BONK": "#F5A623",
        "RAY": "#68D5F7",
    }

    @property
    def sol_mint(self) -> str:
        return self.known_tokens["SOL"]

    @property
    def skr_mint(self) -> str:
        return self.known_tokens["SKR"]

    def symbol_for(self, mint: str) -> Optional[str]:
        for symbol, known_mint in self.known_tokens.items():
            if known_mint == mint:
                return symbol
        return None


class ProgramInfo(FrozenModel):
    program_id: str
    name: str
    category: str = "DeFi"
    source_labels: List[str] = []


DEFAULT_PROGRAMS = [
    ProgramInfo(
        program_id="JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4",
        name="Jupiter V6",
        category="DEX",
        source_labels=["JUPITER"],
    ),
    ProgramInfo(
        program_id="675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
        name="Raydium AMM",
        category="DEX",
        source_labels=["RAYDIUM"],
    ),
    ProgramInfo(
        program_id="CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",
        name="Raydium CLMM",
        category="DEX",
        source_labels=["RAYDIUM_CLMM"],
    ),
    ProgramInfo(
        program_id="whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
        name="Orca Whirlpool",
        category="DEX",
        source_labels=["ORCA"],
    ),
    ProgramInfo(
        program_id="MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD",
        name="Marinade",
        category="Staking",
        source_labels=["MARINADE"],
    ),
    ProgramInfo(
        program_id="TSWAPaqyCSx2KABk68Shruf4rp7CxcNi8hAsbdwmHbN",
        name="Tensor",
        category="NFT",
        source_labels=["TENSOR"],
    ),
    ProgramInfo(
        program_id="dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH",
        name="Drift",
        category="Perps",
        source_labels=["DRIFT"],
    ),
    ProgramInfo(
        program_id="KLend2g3cP87ber8cJv48MUNMWnG8qGPjp3QW3FsN99",
        name="Kamino Lend",
        category="DeFi",
        source_labels=["KAMINO"],
    ),
]


class PipelineSettings(FrozenModel):
    db_path: str = "./data/skr-fyi.db"
    max_concurrency: int = 10
    wallet_batch_size: int = 100
    batch_delay_s: float = 0.2
    holdings_sample_size: int = 0
    balance_batch_size: int = 100


class DiscoveryConfig(FrozenModel):
    strategies: List[str] = [
        "search_assets",
        "assets_by_group",
        "program_accounts",
        "authority_transactions",
    ]
    page_limit: int = 1000
    max_pages: int = 500
    signature_page_limit: int = 1000
    max_signature_pages: int = 200
    parse_batch_size: int = 100
    asset_batch_size: int = 1000
    page_delay_s: float = 0.15
    mark_missing_inactive: bool = True


class ActivityConfig(FrozenModel):
    sample_size: int = 2000
    recent_share: float = 0.6
    recent_days: int = 7
    signatures_per_wallet: int = 30
    parse_per_wallet: int = 10
    window_hours: int = 24


class AggregateConfig(FrozenModel):
    history_days: int = 90
    output_path: str = "./data/dashboard.json"
    top_holdings: int = 20
    top_dapps: int = 15
    pipeline_health_limit: int = 10
    week_over_week_days: int = 7


class AppConfig(FrozenModel):
    oracle: OracleConfig = OracleConfig()
    prices: PriceConfig = PriceConfig()
    tokens: TokenConfig = TokenConfig()
    programs: List[ProgramInfo] = DEFAULT_PROGRAMS
    pipeline: PipelineSettings = PipelineSettings()
    discovery: DiscoveryConfig = DiscoveryConfig()
    activity: ActivityConfig = ActivityConfig()
    aggregate: AggregateConfig = AggregateConfig()
    log_level: str = "INFO"


# env var -> (section, field, cast)
ENV_OVERRIDES = {
    "HELIUS_API_KEY": ("oracle", "api_key", str),
    "HELIUS_RPC_URL": ("oracle", "rpc_url", str),
    "HELIUS_API_URL": ("oracle", "api_url", str),
    "DB_PATH": ("pipeline", "db_path", str),
    "MAX_CONCURRENCY": ("pipeline", "max_concurrency", int),
    "WALLET_BATCH_SIZE": ("pipeline", "wallet_batch_size", int),
    "HOLDINGS_SAMPLE_SIZE": ("pipeline", "holdings_sample_size", int),
    "ACTIVITY_SAMPLE_SIZE": ("activity", "sample_size", int),
    "DASHBOARD_OUTPUT": ("aggregate", "output_path", str),
    "LOG_LEVEL": (None, "log_level", str),
}


def load_config(path: str | Path | None = None, environ: Dict[str, str] | None = None) -> AppConfig:
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)
    if path is None:
        path = environ.get("SKR_CONFIG", "config.yaml")

    data: Dict[str, Any] = {}
    config_path = Path(path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
            if isinstance(loaded, dict):
                data = loaded

    for env_name, (section, field, cast) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name} must be {cast.__name__}, got {raw!r}") from exc
        if section is None:
            data[field] = value
        else:
            data.setdefault(section, {})[field] = value

    return AppConfig(**data)
