from collections import Counter
from typing import Any, Dict, Iterable, List

from loguru import logger

from techindex.config import LICENSE_TYPES_K, STATUS_TOP_K, TOP_N, TOP_NAMES_K
from techindex.models import Address, LicenseRow, NameCount, RosterAnchor
from techindex.roster.indexer import RosterIndex, summarize_rows

BUCKETS = ("0", "1", "2-3", "4-7", "8-24", "25+")
TIERS = ("0", "1", "2-3", "4-6", "7", "8-12", "13-24", "25+")


def top_counts(items: Iterable[str], n: int = 8) -> List[NameCount]:
    """Frequency-ranked values; ties broken by ascending name."""
    counts = Counter(x.strip() for x in items if x and x.strip())
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [NameCount(name=name, count=count) for name, count in ranked[:n]]


def bucket(total: int) -> str:
    if total >= 25:
        return "25+"
    if total >= 8:
        return "8-24"
    if total >= 4:
        return "4-7"
    if total >= 2:
        return "2-3"
    if total == 1:
        return "1"
    return "0"


def tier(total: int) -> str:
    if total >= 25:
        return "25+"
    if total >= 13:
        return "13-24"
    if total >= 8:
        return "8-12"
    if total == 7:
        return "7"
    if total >= 4:
        return "4-6"
    if total >= 2:
        return "2-3"
    if total == 1:
        return "1"
    return "0"


def build_anchor(address_key: str, rows: List[LicenseRow]) -> RosterAnchor:
    counts = summarize_rows(rows)
    first = rows[0] if rows else LicenseRow(row_id="")
    return RosterAnchor(
        address_key=address_key,
        address=Address(street=first.street, city=first.city, state=first.state, zip=first.zip),
        counts=counts,
        top_names=top_counts((r.full_name for r in rows), TOP_NAMES_K),
        license_types=[nc.name for nc in top_counts((r.license_type for r in rows), LICENSE_TYPES_K)],
        status_top=top_counts((r.license_status for r in rows), STATUS_TOP_K),
        bucket=bucket(counts.total),
        tier=tier(counts.total),
    )


def sort_anchors(anchors: Iterable[RosterAnchor]) -> List[RosterAnchor]:
    """total desc, then addressKey asc."""
    return sorted(anchors, key=lambda a: (-a.counts.total, a.address_key))


def build_rollup(index: RosterIndex, top_n: int = TOP_N) -> Dict[str, Any]:
    """One anchor per address key, ranked, with the bucket distribution."""
    anchors = sort_anchors(build_anchor(k, rows) for k, rows in index.by_address_key.items())

    dist = {b: 0 for b in BUCKETS}
    for a in anchors:
        dist[a.bucket] += 1

    logger.info(f"Rollup: {len(anchors)} anchors, dist={dist}")
    if anchors:
        logger.info(f"Densest address: {anchors[0].address_key} ({anchors[0].counts.total} licenses)")
    return {
        "kind": "address_rollup",
        "version": "v1",
        "source": {"uniqAddressKey": len(index.by_address_key)},
        "counts": {"anchors": len(anchors), "dist": dist, "topN": top_n},
        "anchors": [a.to_dict() for a in anchors],
    }


def top_anchors(rollup: Dict[str, Any], n: int = TOP_N) -> Dict[str, Any]:
    anchors = (rollup.get("anchors") or [])[:n]
    totals = [a["counts"]["total"] for a in anchors]
    return {
        "kind": "address_top",
        "version": "v1",
        "source": {"topN": n},
        "counts": {
            "anchors": len(anchors),
            "minTotal": totals[-1] if totals else 0,
            "maxTotal": totals[0] if totals else 0,
        },
        "anchors": anchors,
    }


def load_anchors(rollup: Dict[str, Any]) -> List[RosterAnchor]:
    return [RosterAnchor.from_dict(a) for a in rollup.get("anchors") or []]
