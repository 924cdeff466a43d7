from __future__ import annotations

import math
from dataclasses import dataclass, field


def scale_factor(population: int, sample_size: int) -> float:
    if sample_size <= 0:
        raise ValueError("sample size must be positive")
    return population / sample_size


def extrapolate(count: float, factor: float) -> int:
    """Scale a sample count to the population, rounding halves up."""
    return int(math.floor(count * factor + 0.5))


@dataclass
class WalletActivity:
    wallet: str
    tx_count: int = 0
    swap_count: int = 0
    swap_volume_sol: float = 0.0
    # program_id -> {"tx_count": int, "volume_sol": float}
    programs: dict[str, dict[str, float]] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.tx_count > 0


@dataclass
class ProgramTally:
    wallets: set[str] = field(default_factory=set)
    tx_count: int = 0
    volume_sol: float = 0.0


@dataclass
class ActivityTally:
    """Raw counters accumulated over the sampled wallets."""

    sampled: int = 0
    failed: int = 0
    active_wallets: set[str] = field(default_factory=set)
    tx_count: int = 0
    swap_count: int = 0
    swap_volume_sol: float = 0.0
    programs: dict[str, ProgramTally] = field(default_factory=dict)

    def add(self, activity: WalletActivity | None) -> None:
        self.sampled += 1
        if activity is None:
            self.failed += 1
            return
        if not activity.active:
            return
        self.active_wallets.add(activity.wallet)
        self.tx_count += activity.tx_count
        self.swap_count += activity.swap_count
        self.swap_volume_sol += activity.swap_volume_sol
        for program_id, hit in activity.programs.items():
            tally = self.programs.setdefault(program_id, ProgramTally())
            tally.wallets.add(activity.wallet)
            tally.tx_count += int(hit.get("tx_count", 0))
            tally.volume_sol += float(hit.get("volume_sol", 0.0))

    def extrapolate(self, factor: float) -> dict:
        return {
            "active_wallets_24h": extrapolate(len(self.active_wallets), factor),
            "total_transactions": extrapolate(self.tx_count, factor),
            "swap_count": extrapolate(self.swap_count, factor),
            "swap_volume_sol": round(self.swap_volume_sol * factor, 6),
            "programs": {
                program_id: {
                    "unique_wallets": extrapolate(len(tally.wallets), factor),
                    "tx_count": extrapolate(tally.tx_count, factor),
                    "volume_sol": round(tally.volume_sol * factor, 6),
                }
                for program_id, tally in self.programs.items()
            },
        }
