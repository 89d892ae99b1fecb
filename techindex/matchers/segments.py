# techindex/matchers/segments.py

import dataclasses
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from loguru import logger

from techindex.config import CORP_SUITE_MIN, SEAT_AGGREG_MIN
from techindex.models import TechEntity

SEGMENTS = ("corp_suite", "seat_aggreg", "indie_tech", "unknown")


@dataclass
class SegmentResult:
    segment: str
    confidence: float
    signals: List[str] = field(default_factory=list)


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def infer_segment(dora_licenses: int, active: int = 0) -> SegmentResult:
    """
    Classify an address by how many roster licenses are attached to it.

    Args:
        dora_licenses (int): Number of license rows joined to the address.
        active (int): How many of those are active; only adds an audit signal.

    Returns:
        SegmentResult: segment, confidence in [0, 1] and the ordered reasons.
    """
    n = dora_licenses
    if n <= 0:
        return SegmentResult("unknown", 0.15, ["DORA licenses = 0 -> insufficient density signal"])

    if n >= CORP_SUITE_MIN:
        result = SegmentResult(
            "corp_suite",
            clamp01(0.75 + min(0.25, (n - CORP_SUITE_MIN) / 75)),
            [f"DORA licenses >= {CORP_SUITE_MIN} ({n}) -> corp_suite density"],
        )
    elif n >= SEAT_AGGREG_MIN:
        # peaks at the middle of the range, tapers toward both ends
        distance = min(n - SEAT_AGGREG_MIN, (CORP_SUITE_MIN - 1) - n)
        result = SegmentResult(
            "seat_aggreg",
            clamp01(0.55 + (distance / 8) * 0.25),
            [f"DORA licenses {SEAT_AGGREG_MIN}-{CORP_SUITE_MIN - 1} ({n}) -> seat_aggreg density"],
        )
    else:
        result = SegmentResult(
            "indie_tech",
            clamp01(0.55 + min(0.25, ((n - 1) / 6) * 0.25)),
            [f"DORA licenses 1-{SEAT_AGGREG_MIN - 1} ({n}) -> indie_tech density"],
        )

    if active > 0:
        result.signals.append(f"Active licenses: {active}/{n}")
    return result


def apply_segment(entity: TechEntity) -> TechEntity:
    result = infer_segment(entity.tech_signals.dora_licenses, entity.roster_summary.active)
    return dataclasses.replace(
        entity,
        segment=result.segment,
        segment_confidence=round(result.confidence, 4),
        segment_signals=result.signals,
    )


def apply_segments(entities: Iterable[TechEntity]) -> Tuple[List[TechEntity], Dict[str, int]]:
    out = [apply_segment(e) for e in entities]
    counts = {s: 0 for s in SEGMENTS}
    for e in out:
        counts[e.segment] += 1
    logger.info(f"Segments: {counts}")
    return out, counts
