# techindex/places.py

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from techindex.address import query_from_key
from techindex.config import (
    BATCH_SIZE,
    PLACES_MAX_PER_RUN,
    PLACES_MIN_ACTIVE_SHARE,
    PLACES_MIN_TECH_COUNT,
)
from techindex.models import FacilityRecord, PlaceQueueRow, RosterAnchor
from techindex.storage import EventLog, utc_now

DEFAULT_INCLUDE = ("indie-salon", "suite-cluster")
DEFAULT_EXCLUDE = ("maildrop",)
ANCHOR_QUERY_SUFFIX = " beauty salon"


def best_name(record: FacilityRecord) -> str:
    if record.place_name:
        return record.place_name
    name = (record.business_name or "").strip()
    if name and name.lower() != "unknown":
        return name
    return "Unknown"


def score_queue_row(record: FacilityRecord) -> int:
    """Lookup priority: denser, more active, registered addresses first."""
    score = 0
    n = record.tech_count_at_address
    if n >= 10:
        score += 30
    elif n >= 5:
        score += 20
    elif n >= 2:
        score += 10

    share = record.active_share or 0.0
    if share >= 0.8:
        score += 30
    elif share >= 0.6:
        score += 20
    elif share >= 0.4:
        score += 10

    if record.has_reg:
        score += 5
    if record.category == "suite-cluster":
        score += 10
    elif record.category == "indie-salon":
        score += 5
    return score


def build_place_queue(
    facilities: Iterable[FacilityRecord],
    include_categories: Sequence[str] = DEFAULT_INCLUDE,
    exclude_categories: Sequence[str] = DEFAULT_EXCLUDE,
    min_tech_count: int = PLACES_MIN_TECH_COUNT,
    min_active_share: float = PLACES_MIN_ACTIVE_SHARE,
    require_unknown_name: bool = False,
    max_per_run: int = PLACES_MAX_PER_RUN,
) -> Dict[str, Any]:
    """
    Select facilities worth an external lookup and rank them.

    Args:
        facilities: Merged facility records.
        include_categories: Categories to keep (empty keeps all).
        exclude_categories: Categories always dropped.
        min_tech_count: Minimum licensees at the address.
        min_active_share: Minimum active share at the address.
        require_unknown_name: Only addresses without a usable business name.
        max_per_run: Cap applied after sorting.

    Returns:
        Queue artifact payload with rows sorted by score desc, then addressKey.
    """
    considered = 0
    rows: List[PlaceQueueRow] = []
    for f in facilities:
        considered += 1
        if not f.address_key:
            continue
        if include_categories and f.category not in include_categories:
            continue
        if f.category in exclude_categories:
            continue
        if f.tech_count_at_address < min_tech_count:
            continue
        if (f.active_share or 0.0) < min_active_share:
            continue
        name = best_name(f)
        if require_unknown_name and name != "Unknown":
            continue
        rows.append(PlaceQueueRow(
            address_key=f.address_key,
            query=query_from_key(f.address_key),
            name=name,
            category=f.category,
            tech_count_at_address=f.tech_count_at_address,
            active_share=f.active_share or 0.0,
            has_reg=f.has_reg,
            score=score_queue_row(f),
        ))

    rows.sort(key=lambda r: (-r.score, -r.tech_count_at_address, r.address_key))
    selected = rows[:max_per_run]
    counts = {"considered": considered, "eligible": len(rows), "queued": len(selected)}
    logger.info(f"Place queue: {counts}")
    return {
        "kind": "places_queue",
        "version": "v1",
        "filters": {
            "includeCategories": list(include_categories),
            "excludeCategories": list(exclude_categories),
            "minTechCount": min_tech_count,
            "minActiveShare": min_active_share,
            "requireUnknownName": require_unknown_name,
            "maxPerRun": max_per_run,
        },
        "counts": counts,
        "rows": [r.to_dict() for r in selected],
    }


def queue_from_anchors(anchors: Iterable[RosterAnchor], n: int = PLACES_MAX_PER_RUN) -> List[PlaceQueueRow]:
    """Queue the densest roster anchors directly, biasing the query toward salons."""
    rows = []
    for a in list(anchors)[:n]:
        rows.append(PlaceQueueRow(
            address_key=a.address_key,
            query=query_from_key(a.address_key) + ANCHOR_QUERY_SUFFIX,
            tech_count_at_address=a.counts.total,
            active_share=round(a.counts.active / a.counts.total, 4) if a.counts.total else 0.0,
            score=a.counts.total,
        ))
    return rows


def load_queue(payload: Dict[str, Any]) -> List[PlaceQueueRow]:
    return [PlaceQueueRow.from_dict(r) for r in payload.get("rows") or []]


def batch_iter(rows: List[PlaceQueueRow], batch_size: int):
    """
    Yield index and queue slices of size `batch_size` for batched processing.
    """
    for i in range(0, len(rows), batch_size):
        yield i, rows[i:i + batch_size]


async def pull_one(row: PlaceQueueRow, client) -> Optional[Dict[str, Any]]:
    """
    Look up one queued address.

    Returns:
        The event to append, or None when the lookup failed (logged, not raised).
    """
    try:
        body = await client.lookup(row.query)
    except Exception as e:
        logger.warning(f"⚠️ Place lookup failed for {row.address_key}: {e}")
        return None
    return {
        "ts": utc_now(),
        "addressKey": row.address_key,
        "query": row.query,
        "topPlaceId": body.get("topPlaceId", ""),
        "detailsStatus": body.get("detailsStatus", ""),
        "details": body.get("details"),
    }


async def pull_places(
    queue: List[PlaceQueueRow],
    log: EventLog,
    client,
    batch_size: int = BATCH_SIZE,
) -> Dict[str, int]:
    """
    Fetch every queued address not already in the event log.

    The seen set is rebuilt by replaying the log, so re-running never
    re-fetches an address; events land in completion order, not queue order.
    """
    seen = log.seen_keys()
    todo: List[PlaceQueueRow] = []
    skipped_seen = 0
    for row in queue:
        if row.address_key in seen:
            skipped_seen += 1
            continue
        seen.add(row.address_key)
        todo.append(row)

    pulled = 0
    failed = 0
    for start_idx, batch in batch_iter(todo, batch_size):
        logger.debug(f"Pulling places {start_idx}..{start_idx + len(batch) - 1}")
        events = await asyncio.gather(*[pull_one(row, client) for row in batch])
        for event in events:
            if event is None:
                failed += 1
                continue
            log.append(event)
            pulled += 1

    counts = {"inQueue": len(queue), "skippedSeen": skipped_seen, "pulled": pulled, "failed": failed}
    logger.info(f"Place pull: {counts}")
    return counts
