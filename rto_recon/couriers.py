from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Optional

from rto_recon.domain import CourierCount

UNKNOWN_COURIER = "Unknown"


def normalize_courier(value: Any) -> Optional[str]:
    """Fold the spellings carriers use on manifests into one label."""
    if value is None:
        return None
    courier = str(value).strip()
    if not courier:
        return None
    lowered = courier.lower()
    if "delhivery" in lowered:
        return "Delhivery"
    if lowered == "xb" or "xb " in lowered:
        return "XB"
    return courier


def count_couriers(items: Iterable[dict]) -> list[CourierCount]:
    counts: Counter = Counter()
    for item in items:
        courier = item.get("courier")
        if courier is None or not str(courier).strip():
            courier = UNKNOWN_COURIER
        counts[str(courier).strip()] += 1
    ordered = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
    return [CourierCount(courier=courier, count=count) for courier, count in ordered]
