# techindex/pipeline.py

"""
Stage runners: each reads its inputs from the artifact store, calls the pure
transform and writes the result as a new artifact version.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from techindex.address import build_id_migration
from techindex.clients import PlacesClient
from techindex.config import (
    AUTO_MATCH_MIN,
    BATCH_SIZE,
    DATA_DIR,
    DEFAULT_STATE,
    DENSITY_MAX_TOTAL,
    DENSITY_MIN_TOTAL,
    MAX_OUT,
    METRO_ONLY,
    MIN_ACTIVE,
    REGISTRATIONS_PATH,
    ROSTER_PATH,
    SOFT_MIN_RATIO,
    TOP_N,
)
from techindex.errors import MissingInputError
from techindex.facilities.builder import build_facilities, tech_ids_by_address
from techindex.facilities.merger import (
    facilities_payload,
    load_facilities,
    merge_org_signals,
    merge_place_overrides,
    seed_place_overrides,
)
from techindex.facilities.org_signals import build_org_signals
from techindex.fields import roster_fields
from techindex.matchers.candidates import (
    candidates_payload,
    facility_seed_candidates,
    load_candidates,
    merge_candidates,
    match_table,
    parse_events,
    validate_candidates,
)
from techindex.matchers.segments import apply_segments
from techindex.matchers.tech_entities import build_tech_entities, join_gap_report, join_roster, tech_payload
from techindex.models import AddressParts, OrgSignal, PlaceOverride
from techindex.places import build_place_queue, load_queue, pull_places, queue_from_anchors
from techindex.roster.density import density_artifacts, filter_density
from techindex.roster.indexer import RosterIndex, audit_fields, build_roster_index, load_roster_records
from techindex.roster.rollup import build_rollup, load_anchors, top_anchors
from techindex.storage import ArtifactStore, EventLog

# flat file names used before artifacts were versioned
LEGACY_PATHS = {
    "roster_index": ["dora/roster_index.json", "dora_roster_index.json"],
    "address_rollup": ["dora/address_rollup.json"],
    "address_org_signals": ["co/address_org_signals.json"],
    "facilities": ["co/facilities.json"],
    "place_overrides": ["co/place_overrides.json"],
    "places_candidates": ["places/places_candidates.json"],
}
EVENT_LOG_NAME = "places_raw.jsonl"


def open_store(root: Optional[str] = None) -> ArtifactStore:
    return ArtifactStore(root or DATA_DIR, legacy_paths=LEGACY_PATHS)


def event_log(store: ArtifactStore) -> EventLog:
    return EventLog(store.root / EVENT_LOG_NAME)


def _require_path(path: Optional[str], label: str, env_name: str) -> Path:
    if not path:
        raise MissingInputError(label, [f"${env_name}"], reason="not configured")
    return Path(path)


def load_index(store: ArtifactStore) -> RosterIndex:
    return RosterIndex.from_dict(store.read("roster_index", rows_key="byAddressKey"))


def run_index(store: ArtifactStore, roster_path: Optional[str] = ROSTER_PATH, default_state: str = DEFAULT_STATE) -> Dict[str, Any]:
    """Raw roster export -> roster_index."""
    records, source = load_roster_records(_require_path(roster_path, "roster export", "TECHINDEX_ROSTER_PATH"))
    index = build_roster_index(records, roster_fields, default_state)
    store.write("roster_index", index.to_dict(source))
    return index.counts


def run_audit(store: ArtifactStore, sample: int = 500) -> Dict[str, Any]:
    """roster_index -> roster_field_audit (which raw export fields are actually populated)."""
    fields = audit_fields(load_index(store), sample)
    counts = {"fields": len(fields), "sampledAddresses": sample}
    store.write("roster_field_audit", {"kind": "roster_field_audit", "version": "v1", "counts": counts, "fields": fields})
    return counts


def run_rollup(store: ArtifactStore, top_n: int = TOP_N) -> Dict[str, Any]:
    """roster_index -> address_rollup + address_top."""
    rollup = build_rollup(load_index(store), top_n)
    top = top_anchors(rollup, top_n)
    store.write("address_rollup", rollup)
    store.write("address_top", top)
    return {**rollup["counts"], "top": top["counts"]}


def run_density(
    store: ArtifactStore,
    min_total: int = DENSITY_MIN_TOTAL,
    max_total: int = DENSITY_MAX_TOTAL,
    min_active: int = MIN_ACTIVE,
    soft_min_ratio: float = SOFT_MIN_RATIO,
    max_out: int = MAX_OUT,
) -> Dict[str, Any]:
    """address_rollup -> density_all + density_active."""
    anchors = load_anchors(store.read("address_rollup", rows_key="anchors"))
    result = filter_density(anchors, min_total, max_total, min_active, soft_min_ratio, max_out)
    for name, payload in density_artifacts(result).items():
        store.write(name, payload)
    return result.counts


def run_org_signals(store: ArtifactStore, roster_path: Optional[str] = ROSTER_PATH, default_state: str = DEFAULT_STATE) -> Dict[str, Any]:
    """Raw roster export -> address_org_signals."""
    records, _ = load_roster_records(_require_path(roster_path, "roster export", "TECHINDEX_ROSTER_PATH"))
    payload = build_org_signals(records, roster_fields, default_state)
    store.write("address_org_signals", payload)
    return payload["counts"]


def run_facilities(
    store: ArtifactStore,
    roster_path: Optional[str] = ROSTER_PATH,
    registrations_path: Optional[str] = REGISTRATIONS_PATH,
    metro_only: bool = METRO_ONLY,
) -> Dict[str, Any]:
    """Registrations + roster licensees -> facilities."""
    records, _ = load_roster_records(_require_path(roster_path, "roster export", "TECHINDEX_ROSTER_PATH"))
    tech_groups, tech_counts = tech_ids_by_address(records)
    logger.info(f"Licensee addresses: {tech_counts}")

    registrations: List[Dict[str, Any]] = []
    if registrations_path:
        registrations, _ = load_roster_records(Path(registrations_path), label="business registrations")
    else:
        logger.warning("No registrations configured; facilities come from licensee addresses only")

    rollup_map: Dict[str, str] = {}
    if store.exists("address_rollup"):
        rollup_map = {a.address_key: a.address_key for a in load_anchors(store.read("address_rollup"))}

    payload = build_facilities(registrations, tech_groups, rollup_map, metro_only)
    store.write("facilities", payload)
    return payload["counts"]


def run_merge_org(store: ArtifactStore) -> Dict[str, Any]:
    """facilities + address_org_signals -> facilities (read-modify-write under lock)."""
    org_rows = [OrgSignal.from_dict(r) for r in store.read("address_org_signals", rows_key="rows")["rows"]]
    with store.lock("facilities"):
        prior = store.read("facilities", rows_key="rows")
        rows, counts = merge_org_signals(load_facilities(prior), org_rows)
        store.write("facilities", facilities_payload(rows, {**prior.get("counts", {}), "orgMerge": counts}))
    return counts


def run_seed_overrides(store: ArtifactStore) -> Dict[str, Any]:
    """facilities -> place_overrides sheets for every address that needs confirming."""
    facilities = load_facilities(store.read("facilities", rows_key="rows"))
    existing: List[PlaceOverride] = []
    with store.lock("place_overrides"):
        if store.exists("place_overrides"):
            existing = [PlaceOverride.from_dict(r) for r in store.read("place_overrides").get("rows") or []]
        sheets = seed_place_overrides(facilities, existing)
        counts = {"sheets": len(sheets), "previouslySeeded": len(existing)}
        store.write("place_overrides", {
            "kind": "place_overrides",
            "version": "v1",
            "counts": counts,
            "rows": [s.to_dict() for s in sheets],
        })
    return counts


def run_merge_overrides(store: ArtifactStore) -> Dict[str, Any]:
    """facilities + place_overrides -> facilities."""
    overrides = [PlaceOverride.from_dict(r) for r in store.read("place_overrides", rows_key="rows")["rows"]]
    with store.lock("facilities"):
        prior = store.read("facilities", rows_key="rows")
        rows, counts = merge_place_overrides(load_facilities(prior), overrides)
        store.write("facilities", facilities_payload(rows, {**prior.get("counts", {}), "overrideMerge": counts}))
    return counts


def run_queue(store: ArtifactStore, from_anchors: bool = False, **filters) -> Dict[str, Any]:
    """facilities (or address_top anchors) -> places_queue."""
    if from_anchors:
        anchors = load_anchors(store.read("address_top", rows_key="anchors"))
        rows = queue_from_anchors(anchors, filters.get("max_per_run", TOP_N))
        payload = {
            "kind": "places_queue",
            "version": "v1",
            "counts": {"considered": len(anchors), "queued": len(rows)},
            "rows": [r.to_dict() for r in rows],
        }
    else:
        payload = build_place_queue(load_facilities(store.read("facilities", rows_key="rows")), **filters)
    store.write("places_queue", payload)
    return payload["counts"]


async def run_pull(store: ArtifactStore, client: Optional[PlacesClient] = None, batch_size: int = BATCH_SIZE) -> Dict[str, Any]:
    """places_queue -> appended events in the place-lookup log."""
    queue = load_queue(store.read("places_queue", rows_key="rows"))
    client = client or PlacesClient()
    if not getattr(client, "enabled", True):
        logger.warning("GOOGLE_PLACES_API_KEY not set; recording stub lookup events")
    return await pull_places(queue, event_log(store), client, batch_size)


def run_candidates(store: ArtifactStore) -> Dict[str, Any]:
    """Event log (+ facility seeds) -> places_candidates + places_candidates_validation."""
    log = event_log(store)
    parsed, parse_counts = parse_events(log.replay())
    if log.corrupt_lines:
        parse_counts["corruptLines"] = log.corrupt_lines

    seeds = []
    if store.exists("facilities"):
        seeds = facility_seed_candidates(load_facilities(store.read("facilities")))
    rows, merge_counts = merge_candidates(parsed, seeds)
    if not rows:
        raise MissingInputError("place events", [log.path], reason="zero rows")

    counts = {**merge_counts, "parse": parse_counts}
    store.write("places_candidates", candidates_payload(rows, counts))
    report = validate_candidates(log.text(), parsed)
    store.write("places_candidates_validation", {"kind": "places_candidates_validation", "version": "v1", **report})
    return counts


def run_match(store: ArtifactStore, min_score: int = AUTO_MATCH_MIN) -> Dict[str, Any]:
    """places_candidates -> places_matched + places_matched_summary."""
    candidates = load_candidates(store.read("places_candidates", rows_key="rows"))
    payload, summary = match_table(candidates, min_score)
    store.write("places_matched", payload)
    store.write("places_matched_summary", summary)
    return payload["counts"]


def run_tech(store: ArtifactStore) -> Dict[str, Any]:
    """places_candidates + roster_index -> tech_index + tech_join_gaps."""
    candidates = load_candidates(store.read("places_candidates", rows_key="rows"))
    index = load_index(store)
    entities, build_counts = build_tech_entities(candidates)
    joined, join_counts = join_roster(entities, index)
    segmented, segment_counts = apply_segments(joined)

    counts = {**join_counts, "segments": segment_counts, "candidates": build_counts["candidates"]}
    store.write("tech_index", tech_payload(segmented, counts))
    gaps = join_gap_report(segmented, index)
    store.write("tech_join_gaps", {"kind": "tech_join_gaps", "version": "v1", **gaps})
    return counts


def run_migrate_ids(store: ArtifactStore, roster_path: Optional[str] = ROSTER_PATH, default_state: str = DEFAULT_STATE) -> Dict[str, Any]:
    """One-time backfill map from the retired 10-hex ids to canonical ids."""
    records, _ = load_roster_records(_require_path(roster_path, "roster export", "TECHINDEX_ROSTER_PATH"))
    parts = (
        AddressParts(
            street1=roster_fields.get(r, "street1"),
            street2=roster_fields.get(r, "street2"),
            city=roster_fields.get(r, "city"),
            state=roster_fields.get(r, "state") or default_state,
            zip=roster_fields.get(r, "zip"),
        )
        for r in records
    )
    mapping = build_id_migration(parts)
    counts = {"records": len(records), "legacyIds": len(mapping)}
    store.write("address_id_migration", {"kind": "address_id_migration", "version": "v1", "counts": counts, "map": mapping})
    return counts


async def run_all(
    store: ArtifactStore,
    client: Optional[PlacesClient] = None,
    roster_path: Optional[str] = ROSTER_PATH,
    registrations_path: Optional[str] = REGISTRATIONS_PATH,
    metro_only: bool = METRO_ONLY,
) -> Dict[str, Dict[str, Any]]:
    """Every stage in dependency order."""
    summary: Dict[str, Dict[str, Any]] = {}
    summary["index"] = run_index(store, roster_path=roster_path)
    summary["audit"] = run_audit(store)
    summary["rollup"] = run_rollup(store)
    summary["density"] = run_density(store)
    summary["org-signals"] = run_org_signals(store, roster_path=roster_path)
    summary["facilities"] = run_facilities(store, roster_path, registrations_path, metro_only)
    summary["merge-org"] = run_merge_org(store)
    summary["seed-overrides"] = run_seed_overrides(store)
    if summary["seed-overrides"]["sheets"]:
        summary["merge-overrides"] = run_merge_overrides(store)
    summary["queue"] = run_queue(store)
    if summary["queue"]["queued"]:
        summary["pull"] = await run_pull(store, client)
    else:
        logger.warning("Place queue is empty; skipping lookups")
    summary["candidates"] = run_candidates(store)
    summary["match"] = run_match(store)
    summary["tech"] = run_tech(store)
    return summary
