from __future__ import annotations

from typing import Any, Callable

from skr_pipeline.api.oracle import OracleClient
from skr_pipeline.config import AppConfig, load_config
from skr_pipeline.errors import OracleError, PipelineError

SAMPLE_MEMBERS = 5


def check_slot(oracle: OracleClient, config: AppConfig) -> str:
    return f"current slot {oracle.get_slot()}"


def check_group_mint(oracle: OracleClient, config: AppConfig) -> str:
    account = oracle.get_account_info(config.tokens.sgt_group_address)
    if account is None:
        raise PipelineError("group mint account not found")
    return f"owner={account.get('owner')} lamports={account.get('lamports')}"


def check_token_mint(oracle: OracleClient, config: AppConfig) -> str:
    infos = oracle.get_mint_infos([config.tokens.skr_mint])
    info = infos.get(config.tokens.skr_mint)
    if info is None:
        raise PipelineError("token mint account not found")
    return f"decimals={info.decimals} supply={info.supply}"


def check_group_members(oracle: OracleClient, config: AppConfig) -> str:
    assets = oracle.search_assets(config.tokens.sgt_group_address, page=1, limit=SAMPLE_MEMBERS)
    if not assets:
        raise PipelineError("asset index returned no group members")
    owners = ", ".join(asset.owner or "?" for asset in assets)
    return f"{len(assets)} members: {owners}"


def check_wallet_balances(oracle: OracleClient, config: AppConfig) -> str:
    assets = oracle.search_assets(config.tokens.sgt_group_address, page=1, limit=1)
    owner = assets[0].owner if assets else None
    if not owner:
        raise PipelineError("no member wallet to inspect")
    accounts = oracle.get_token_accounts_by_owner(owner, config.tokens.spl_token_program)
    accounts += oracle.get_token_accounts_by_owner(owner, config.tokens.token_2022_program)
    lamports = (oracle.get_multiple_accounts([owner])[0] or {}).get("lamports") or 0
    held = sum(1 for account in accounts if account.amount > 0)
    return f"{owner} sol_lamports={lamports} token_accounts={len(accounts)} non_zero={held}"


CHECKS: list[tuple[str, Callable[[OracleClient, AppConfig], str]]] = [
    ("rpc", check_slot),
    ("group_mint", check_group_mint),
    ("token_mint", check_token_mint),
    ("group_members", check_group_members),
    ("wallet_balances", check_wallet_balances),
]


def run_checks(oracle: OracleClient, config: AppConfig) -> list[dict[str, Any]]:
    results = []
    for name, check in CHECKS:
        try:
            detail = check(oracle, config)
            results.append({"check": name, "ok": True, "detail": detail})
        except (OracleError, PipelineError) as exc:
            results.append({"check": name, "ok": False, "detail": str(exc)})
    return results


def main() -> None:
    config = load_config()
    api_key = config.oracle.api_key
    print(f"api_key: {api_key[:8] + '...' if api_key else 'MISSING'}")
    print(f"rpc_url: {config.oracle.rpc_url}")
    if not api_key:
        print("HELIUS_API_KEY is not set.")
        raise SystemExit(1)

    results = run_checks(OracleClient(config.oracle), config)
    for result in results:
        status = "ok" if result["ok"] else "FAIL"
        print(f"- {result['check']}: {status} {result['detail']}")
    if not all(result["ok"] for result in results):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
