from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

LAMPORTS_PER_SOL = 1_000_000_000


class OracleModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Asset(OracleModel):
    id: str
    owner: Optional[str] = None

    @classmethod
    def from_das(cls, payload: dict[str, Any]) -> "Asset":
        ownership = payload.get("ownership")
        if not isinstance(ownership, dict):
            ownership = {}
        return cls(id=str(payload.get("id") or ""), owner=ownership.get("owner"))


class SignatureInfo(OracleModel):
    signature: str
    slot: Optional[int] = None
    block_time: Optional[int] = Field(default=None, alias="blockTime")
    err: Optional[Any] = None


class TokenTransfer(OracleModel):
    mint: Optional[str] = None
    from_user_account: Optional[str] = Field(default=None, alias="fromUserAccount")
    to_user_account: Optional[str] = Field(default=None, alias="toUserAccount")
    token_amount: float = Field(default=0.0, alias="tokenAmount")

    @field_validator("token_amount", mode="before")
    @classmethod
    def _amount_default(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class NativeTransfer(OracleModel):
    from_user_account: Optional[str] = Field(default=None, alias="fromUserAccount")
    to_user_account: Optional[str] = Field(default=None, alias="toUserAccount")
    amount: int = 0

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_default(cls, value: Any) -> Any:
        return 0 if value is None else value


class AccountData(OracleModel):
    account: Optional[str] = None
    native_balance_change: int = Field(default=0, alias="nativeBalanceChange")

    @field_validator("native_balance_change", mode="before")
    @classmethod
    def _change_default(cls, value: Any) -> Any:
        return 0 if value is None else value


class Instruction(OracleModel):
    program_id: Optional[str] = Field(default=None, alias="programId")


class EnhancedTransaction(OracleModel):
    signature: str = ""
    type: str = "UNKNOWN"
    source: str = "UNKNOWN"
    timestamp: Optional[int] = None
    token_transfers: List[TokenTransfer] = Field(default_factory=list, alias="tokenTransfers")
    native_transfers: List[NativeTransfer] = Field(default_factory=list, alias="nativeTransfers")
    account_data: List[AccountData] = Field(default_factory=list, alias="accountData")
    instructions: List[Instruction] = Field(default_factory=list)

    @field_validator("token_transfers", "native_transfers", "account_data", "instructions", mode="before")
    @classmethod
    def _list_default(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("type", "source", mode="before")
    @classmethod
    def _label_default(cls, value: Any) -> Any:
        return value or "UNKNOWN"

    @property
    def is_swap(self) -> bool:
        return self.type.upper() == "SWAP"

    def referenced_accounts(self) -> set[str]:
        accounts = {entry.account for entry in self.account_data if entry.account}
        accounts.update(ix.program_id for ix in self.instructions if ix.program_id)
        return accounts

    def native_volume_sol(self) -> float:
        lamports = sum(transfer.amount for transfer in self.native_transfers if transfer.amount > 0)
        return lamports / LAMPORTS_PER_SOL


class TokenAccount(OracleModel):
    mint: str
    owner: Optional[str] = None
    amount: float = 0.0
    decimals: int = 0

    @classmethod
    def from_parsed(cls, payload: dict[str, Any]) -> Optional["TokenAccount"]:
        """Build from a jsonParsed ``getTokenAccountsByOwner`` entry."""
        account = payload.get("account") or {}
        data = account.get("data") or {}
        parsed = data.get("parsed") if isinstance(data, dict) else None
        info = (parsed or {}).get("info") or {}
        mint = info.get("mint")
        if not mint:
            return None
        token_amount = info.get("tokenAmount") or {}
        decimals = int(token_amount.get("decimals") or 0)
        ui_amount = token_amount.get("uiAmount")
        if ui_amount is None:
            raw = token_amount.get("amount") or 0
            ui_amount = float(raw) / (10**decimals)
        return cls(mint=mint, owner=info.get("owner"), amount=float(ui_amount), decimals=decimals)


class MintInfo(OracleModel):
    address: str
    mint_authority: Optional[str] = None
    decimals: int = 0
    supply: float = 0.0

    @classmethod
    def from_parsed(cls, address: str, payload: dict[str, Any] | None) -> Optional["MintInfo"]:
        if not payload:
            return None
        data = payload.get("data") or {}
        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not parsed or parsed.get("type") != "mint":
            return None
        info = parsed.get("info") or {}
        return cls(
            address=address,
            mint_authority=info.get("mintAuthority"),
            decimals=int(info.get("decimals") or 0),
            supply=float(info.get("supply") or 0),
        )
