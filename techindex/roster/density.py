"""
Density filter: picks the small multi-license addresses worth targeting.

The score is a plain linear function (active first), not a learned model:
    score = active*1000 + activeRatio*100 + uniqueNames*10 + total
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from loguru import logger

from techindex.config import DENSITY_MAX_TOTAL, DENSITY_MIN_TOTAL, MAX_OUT, MIN_ACTIVE, SOFT_MIN_RATIO
from techindex.models import AnchorCounts, DensityRow, RosterAnchor
from techindex.roster.rollup import tier as compute_tier

STORE_DECIMALS = 4


@dataclass
class DensityResult:
    in_range: List[DensityRow] = field(default_factory=list)
    rows: List[DensityRow] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    knobs: Dict[str, Any] = field(default_factory=dict)


def active_ratio(counts: AnchorCounts) -> float:
    return counts.active / counts.total if counts.total > 0 else 0.0


def density_score(counts: AnchorCounts) -> float:
    return counts.active * 1000 + active_ratio(counts) * 100 + counts.unique_names * 10 + counts.total


def passes_gate(
    counts: AnchorCounts,
    min_active: int = MIN_ACTIVE,
    soft_min_ratio: float = SOFT_MIN_RATIO,
) -> bool:
    ratio = active_ratio(counts)
    # A) hard gate
    if counts.active >= min_active:
        return ratio >= soft_min_ratio
    # B) tiny totals: one active plus a second distinct name is enough
    if counts.total <= 3 and counts.active >= 1 and counts.unique_names >= 2:
        return ratio >= soft_min_ratio
    return False


def to_density_row(anchor: RosterAnchor) -> DensityRow:
    c = anchor.counts
    return DensityRow(
        address_key=anchor.address_key,
        address=anchor.address,
        counts=AnchorCounts(total=c.total, active=c.active, unique_names=c.unique_names, unique_types=c.unique_types),
        active_ratio=round(active_ratio(c), STORE_DECIMALS),
        tier=compute_tier(c.total),
        top_name=anchor.top_names[0].name if anchor.top_names else "",
        top_names=anchor.top_names[:5],
        status_top=anchor.status_top[:5],
        license_types=list(anchor.license_types),
        score=round(density_score(c), STORE_DECIMALS),
    )


def _rank_key(row: DensityRow):
    # compare on unrounded ratio/score; rounding only applies to stored values
    c = row.counts
    return (-c.active, -active_ratio(c), -c.unique_names, -c.total, -density_score(c))


def filter_density(
    anchors: Iterable[RosterAnchor],
    min_total: int = DENSITY_MIN_TOTAL,
    max_total: int = DENSITY_MAX_TOTAL,
    min_active: int = MIN_ACTIVE,
    soft_min_ratio: float = SOFT_MIN_RATIO,
    max_out: int = MAX_OUT,
) -> DensityResult:
    """
    Select anchors with total in [min_total, max_total] that pass the activity gate.

    Args:
        anchors: Rollup anchors, any order.
        min_total, max_total: Closed range of license totals to consider.
        min_active: Hard-gate minimum active licenses.
        soft_min_ratio: Minimum active ratio applied to both gates (0 disables it).
        max_out: Cap applied after sorting.

    Returns:
        DensityResult with every in-range row, the ranked passing rows, counts and knobs.
    """
    in_range = [to_density_row(a) for a in anchors if min_total <= a.counts.total <= max_total]
    passing = [r for r in in_range if passes_gate(r.counts, min_active, soft_min_ratio)]
    passing.sort(key=_rank_key)
    limited = passing[:max_out] if max_out >= 0 else passing

    counts = {"inRange": len(in_range), "pass": len(passing), "out": len(limited)}
    knobs = {
        "MIN_ACTIVE": min_active,
        "SOFT_MIN_RATIO": soft_min_ratio,
        "MAX_OUT": max_out,
        "MIN_TOTAL": min_total,
        "MAX_TOTAL": max_total,
    }
    logger.info(f"Density filter {min_total}-{max_total}: {counts}")
    rejected = next((r for r in in_range if not passes_gate(r.counts, min_active, soft_min_ratio)), None)
    if rejected is not None:
        logger.info(f"Gate rejected e.g. {rejected.address_key} counts={rejected.counts.to_dict()}")
    return DensityResult(in_range=in_range, rows=limited, counts=counts, knobs=knobs)


def density_artifacts(result: DensityResult) -> Dict[str, Dict[str, Any]]:
    return {
        "density_all": {
            "kind": "density_all",
            "version": "v1",
            "counts": {"rows": len(result.in_range)},
            "rows": [r.to_dict() for r in result.in_range],
        },
        "density_active": {
            "kind": "density_active",
            "version": "v1",
            "knobs": result.knobs,
            "counts": result.counts,
            "rows": [r.to_dict() for r in result.rows],
        },
    }
