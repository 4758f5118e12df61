from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    claim_penalty: float = 15.0
    gap_penalty_per_excess_pct: float = 0.2
    gap_penalty_cap: float = 20.0
    sweep_cron: str = "0 3 * * *"  # Nightly: 03:00
    sweep_concurrency: int = 8
