"""
Facility/org-signal merge and manual place overrides.

Every merge here is a pure function of (facilities, new input): records are
copied, never mutated, and merging the same input into already-merged output
changes nothing.
"""
import dataclasses
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from loguru import logger

from techindex.address import address_join_key, query_from_key
from techindex.config import ORG_SHARE_MIN, OVERRIDE_CONFIRM_MIN, SUITE_TECH_MIN
from techindex.models import FacilityRecord, OrgSignal, PlaceOverride

# substring -> brand id, first match wins
BRAND_PATTERNS = (
    (("SOLA",), "sola"),
    (("PHENIX",), "phenix"),
    (("SALONS BY JC", "SALONSBYJC", "SALONS BY J C"), "salonsbyjc"),
    (("MY SALON SUITE",), "mysalonsuite"),
    (("IMAGE STUDIOS",), "imagestudios"),
)

CATEGORIES = ("independent-tech", "indie-salon", "suite-cluster", "maildrop")


def brand_id_from_text(text: Optional[str]) -> Optional[str]:
    v = str(text or "").upper()
    if not v:
        return None
    for needles, brand_id in BRAND_PATTERNS:
        if any(n in v for n in needles):
            return brand_id
    return None


def compute_category(record: FacilityRecord) -> str:
    if record.is_likely_maildrop is True:
        return "maildrop"
    if record.tech_count_at_address >= SUITE_TECH_MIN:
        return "suite-cluster"
    if record.tech_count_at_address == 1:
        return "independent-tech"
    return "indie-salon"


def has_registered_name(record: FacilityRecord) -> bool:
    name = (record.business_name or "").strip()
    return bool(name) and name != "Unknown"


def index_org_signals(org_rows: Iterable[OrgSignal]) -> Tuple[Dict[str, OrgSignal], Dict[str, OrgSignal]]:
    by_join: Dict[str, OrgSignal] = {}
    by_raw: Dict[str, OrgSignal] = {}
    for o in org_rows:
        if not o.address_key:
            continue
        by_raw[o.address_key] = o
        if o.address_join_key:
            by_join[o.address_join_key] = o
    return by_join, by_raw


def merge_facility(record: FacilityRecord, org: Optional[OrgSignal]) -> FacilityRecord:
    """Attach org signals to one facility and derive candidate name, brand, needsConfirm and category."""
    has_reg = has_registered_name(record)
    join_key = address_join_key(record.address_key)
    r = dataclasses.replace(record, has_reg=has_reg, address_join_key=join_key)
    if org is None:
        r.category = compute_category(r)
        return r

    r.licensee_count_at_address = org.licensee_count_at_address
    r.active_licensees_at_address = org.active_licensees_at_address
    r.expired_licensees_at_address = org.expired_licensees_at_address
    r.unknown_status_at_address = org.unknown_status_at_address
    r.active_share = org.active_share
    r.top_org_name = org.top_org_name
    r.top_org_count = org.top_org_count
    r.top_org_share = org.top_org_share
    r.top5_org_candidates = list(org.top5_org_candidates)
    r.is_po_box = org.is_po_box
    r.is_office_towerish = org.is_office_towerish
    r.is_likely_maildrop = org.is_likely_maildrop

    strong_org = bool(org.top_org_name) and org.top_org_share >= ORG_SHARE_MIN
    if not has_reg and strong_org:
        r.business_name_candidate = org.top_org_name
        r.business_name_candidate_share = org.top_org_share

    brand_text = record.business_name if has_reg else r.business_name_candidate
    brand = brand_id_from_text(brand_text)
    if brand and not r.franchise_brand_id:
        r.franchise_brand_id = brand

    suite_signal = r.bucket == "suite-signal" or r.tech_count_at_address >= SUITE_TECH_MIN
    r.needs_confirm = suite_signal and not has_reg and (not strong_org or org.is_likely_maildrop)
    r.category = compute_category(r)
    return r


def merge_org_signals(
    facilities: Iterable[FacilityRecord],
    org_rows: Iterable[OrgSignal],
) -> Tuple[List[FacilityRecord], Dict[str, int]]:
    """
    Join org signals onto facilities by address join key, falling back to the raw key.

    Returns:
        (merged rows, counts) with counts {facilities, mergedOrgSignals,
        setBusinessNameCandidate, setBrand, needsConfirm, unmatched}.
    """
    by_join, by_raw = index_org_signals(org_rows)
    out: List[FacilityRecord] = []
    counts = {
        "facilities": 0,
        "mergedOrgSignals": 0,
        "setBusinessNameCandidate": 0,
        "setBrand": 0,
        "needsConfirm": 0,
        "unmatched": 0,
    }
    unmatched_sample = None

    for record in facilities:
        org = by_join.get(address_join_key(record.address_key)) or by_raw.get(record.address_key)
        merged = merge_facility(record, org)
        out.append(merged)
        counts["facilities"] += 1
        if org is None:
            counts["unmatched"] += 1
            unmatched_sample = unmatched_sample or record.address_key
            continue
        counts["mergedOrgSignals"] += 1
        if merged.business_name_candidate and merged.business_name_candidate != record.business_name_candidate:
            counts["setBusinessNameCandidate"] += 1
        if merged.franchise_brand_id and not record.franchise_brand_id:
            counts["setBrand"] += 1
        if merged.needs_confirm:
            counts["needsConfirm"] += 1

    logger.info(f"Org signal merge: {counts}")
    if unmatched_sample:
        logger.warning(f"{counts['unmatched']} facilities without org signals, e.g. {unmatched_sample}")
    return out, counts


def maps_search_url(address_key: str) -> str:
    return f"https://www.google.com/maps/search/?api=1&query={quote(query_from_key(address_key))}"


def seed_place_overrides(
    facilities: Iterable[FacilityRecord],
    existing: Iterable[PlaceOverride] = (),
) -> List[PlaceOverride]:
    """
    One override sheet per facility needing confirmation.

    Existing sheets are kept as-is (including ones whose facility no longer
    needs confirming, since they hold the answer), new ones appended by key.
    """
    existing_by_key = {o.address_key: o for o in existing}
    added: Dict[str, PlaceOverride] = {}
    for f in facilities:
        if f.needs_confirm is not True or f.address_key in existing_by_key:
            continue
        added[f.address_key] = PlaceOverride(
            address_key=f.address_key,
            maps_url=maps_search_url(f.address_key),
        )
    out = sorted([*existing_by_key.values(), *added.values()], key=lambda o: o.address_key)
    logger.info(f"Override sheets: {len(out)} ({len(added)} new, {len(existing_by_key)} previously seeded)")
    return out


def merge_place_overrides(
    facilities: Iterable[FacilityRecord],
    overrides: Iterable[PlaceOverride],
) -> Tuple[List[FacilityRecord], Dict[str, int]]:
    """Apply confirmed fields that are set (never blank an existing value)."""
    by_key = {o.address_key: o for o in overrides}
    out: List[FacilityRecord] = []
    applied = 0
    for record in facilities:
        o = by_key.get(record.address_key)
        if o is None:
            out.append(record)
            continue
        applied += 1
        r = dataclasses.replace(record)
        if o.place_type and o.place_type != "unknown":
            r.place_type = o.place_type
        for name in ("place_name", "franchise_brand_id", "website", "phone", "ig", "maps_url"):
            value = getattr(o, name)
            if value:
                setattr(r, name, value)
        if isinstance(o.confidence, (int, float)):
            r.place_confidence = o.confidence
        if o.notes:
            r.place_notes = o.notes
        if r.place_type and r.place_type != "unknown" and (r.place_confidence or 0) >= OVERRIDE_CONFIRM_MIN:
            r.needs_confirm = False
        out.append(r)

    counts = {"facilities": len(out), "overridesApplied": applied}
    logger.info(f"Override merge: {counts}")
    return out, counts


def facilities_payload(rows: List[FacilityRecord], counts: Dict[str, Any]) -> Dict[str, Any]:
    return {"kind": "facilities", "version": "v1", "counts": counts, "rows": [r.to_dict() for r in rows]}


def load_facilities(payload: Dict[str, Any]) -> List[FacilityRecord]:
    return [FacilityRecord.from_dict(r) for r in payload.get("rows") or []]
