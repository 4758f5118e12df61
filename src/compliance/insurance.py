from __future__ import annotations

from types import MappingProxyType
from typing import Any

from compliance.data_models import InsuranceTier, InsuranceType


REVENUE_SPLITS = MappingProxyType({
    InsuranceType.COMMERCIAL: 90,
    InsuranceType.P2P: 75,
    InsuranceType.NONE: 40,
})

_ALIASES = {
    "commercial": InsuranceType.COMMERCIAL,
    "p2p": InsuranceType.P2P,
}


def classify_insurance(value: Any) -> InsuranceType:
    if value is None:
        return InsuranceType.NONE
    return _ALIASES.get(str(value).strip().lower(), InsuranceType.NONE)


def resolve_insurance_tier(value: Any) -> InsuranceTier:
    """Map a verified insurance type to the host's revenue split.

    Total over all inputs: anything that is not ``commercial`` or ``p2p``
    lands in the 40% platform tier.
    """
    kind = classify_insurance(value)
    return InsuranceTier(type=kind, revenue_split_percent=REVENUE_SPLITS[kind])
