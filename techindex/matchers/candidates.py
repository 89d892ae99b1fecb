"""
Place candidates: turns raw place-lookup events into one scored candidate per address.

matchScore measures "is this a plausible real salon business", not "is this the
right business for the query": the lookup service already ranks by relevance,
so the score only adds up presence and type signals.
"""
from typing import Any, Dict, Iterable, List, Tuple

from loguru import logger

from techindex.address import split_address_key
from techindex.config import AUTO_MATCH_MIN, MATCH_REVIEW_SAMPLE
from techindex.models import FacilityRecord, PlaceCandidate, PlaceMatch
from techindex.storage import sha256_text

SOURCE_LOOKUP = "google_textsearch+details_v1.1"
SOURCE_FACILITY = "facility_seed"

TYPE_POINTS = (("beauty_salon", 30), ("hair_care", 10), ("spa", 8))
SALON_TYPES = ("beauty_salon", "hair_care", "spa")


def _s(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _text(value: Any) -> str:
    if isinstance(value, dict):
        return _s(value.get("text"))
    return _s(value)


def place_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a details result; accepts legacy Places fields and v1 Places fields."""
    result = result or {}
    types = result.get("types")
    return {
        "name": _text(result.get("displayName")) or _s(result.get("name")),
        "formatted_address": _s(result.get("formattedAddress") or result.get("formatted_address")),
        "website": _s(result.get("websiteUri") or result.get("website")),
        "phone": _s(result.get("nationalPhoneNumber") or result.get("formatted_phone_number")),
        "url": _s(result.get("googleMapsUri") or result.get("url")),
        "types": [str(t) for t in types] if isinstance(types, list) else [],
    }


def score_place(place: Dict[str, Any]) -> int:
    """+30 name, +15 website, +10 phone, +30 beauty_salon, +10 hair_care, +8 spa."""
    score = 0
    if place.get("name"):
        score += 30
    if place.get("website"):
        score += 15
    if place.get("phone"):
        score += 10
    types = set(place.get("types") or [])
    for type_name, points in TYPE_POINTS:
        if type_name in types:
            score += points
    return score


def candidate_from_event(event: Dict[str, Any]) -> PlaceCandidate:
    details = event.get("details") or {}
    response = details.get("response") or {}
    place = place_result(response.get("result") or {})
    return PlaceCandidate(
        address_key=_s(event.get("addressKey")),
        query=_s(event.get("query")),
        place_name=place["name"],
        formatted_address=place["formatted_address"],
        website=place["website"],
        phone=place["phone"],
        url=place["url"],
        types=place["types"],
        match_score=score_place(place),
        source=SOURCE_LOOKUP,
        details_status=_s(response.get("status") or event.get("detailsStatus")),
    )


def parse_events(events: Iterable[Dict[str, Any]]) -> Tuple[List[PlaceCandidate], Dict[str, int]]:
    """
    One candidate per addressKey: the highest score wins (first seen on ties)
    and type tags are unioned across all events for the address.
    """
    best: Dict[str, PlaceCandidate] = {}
    events_seen = 0
    no_key = 0
    for event in events:
        events_seen += 1
        cand = candidate_from_event(event)
        if not cand.address_key:
            no_key += 1
            continue
        current = best.get(cand.address_key)
        if current is None:
            best[cand.address_key] = cand
            continue
        types = list(dict.fromkeys(current.types + cand.types))
        if cand.match_score > current.match_score:
            cand.types = types
            best[cand.address_key] = cand
        else:
            current.types = types

    rows = sorted(best.values(), key=lambda c: c.address_key)
    counts = {"events": events_seen, "addresses": len(rows), "skippedNoKey": no_key}
    logger.info(f"Parsed place candidates: {counts}")
    return rows, counts


def facility_seed_candidates(facilities: Iterable[FacilityRecord]) -> List[PlaceCandidate]:
    """Candidates seeded from facility records (brand or registered name as place name)."""
    by_key: Dict[str, PlaceCandidate] = {}
    for f in facilities:
        if not f.address_key:
            continue
        brand = f.franchise_brand_id or ""
        name = f.place_name or (f.business_name if f.has_reg else "") or f.business_name_candidate or ""
        place = {"name": name, "website": f.website or "", "phone": f.phone or "", "types": []}
        parts = split_address_key(f.address_key)
        by_key[f.address_key] = PlaceCandidate(
            address_key=f.address_key,
            place_name=name,
            formatted_address=", ".join(p for p in (parts.street1, parts.city, parts.state, parts.zip) if p),
            website=place["website"],
            phone=place["phone"],
            match_score=score_place(place),
            source=SOURCE_FACILITY,
            brand=brand,
            category=f.category,
        )
    return sorted(by_key.values(), key=lambda c: c.address_key)


def merge_candidates(
    base: Iterable[PlaceCandidate],
    seeds: Iterable[PlaceCandidate],
) -> Tuple[List[PlaceCandidate], Dict[str, int]]:
    """Base candidates first-seen wins; facility seeds only fill addresses the base lacks."""
    base = list(base)
    seeds = list(seeds)
    by_key: Dict[str, PlaceCandidate] = {}
    for c in base:
        if c.address_key and c.address_key not in by_key:
            by_key[c.address_key] = c

    added = 0
    skipped_dupes = 0
    for c in seeds:
        if not c.address_key:
            continue
        if c.address_key in by_key:
            skipped_dupes += 1
            continue
        by_key[c.address_key] = c
        added += 1

    rows = sorted(by_key.values(), key=lambda c: c.address_key)
    counts = {
        "baseRows": len(base),
        "facilityRows": len(seeds),
        "addedFromFacilities": added,
        "skippedFacilityDuplicates": skipped_dupes,
        "rows": len(rows),
    }
    logger.info(f"Merged candidates: {counts}")
    return rows, counts


def validate_candidates(raw_log: str, candidates: List[PlaceCandidate]) -> Dict[str, Any]:
    """QA report: the raw event log fingerprint next to the parsed candidate set."""
    scores = [c.match_score for c in candidates]
    lines = [line for line in raw_log.splitlines() if line.strip()]
    return {
        "raw": {"lines": len(lines), "sha256": sha256_text(raw_log)},
        "derived": {
            "rows": len(candidates),
            "uniqAddressKey": len({c.address_key for c in candidates if c.address_key}),
            "withTypes": sum(1 for c in candidates if c.types),
            "withPhone": sum(1 for c in candidates if c.phone),
            "withWebsite": sum(1 for c in candidates if c.website),
            "scoreMin": min(scores) if scores else 0,
            "scoreMax": max(scores) if scores else 0,
        },
    }


def candidates_payload(rows: List[PlaceCandidate], counts: Dict[str, Any]) -> Dict[str, Any]:
    return {"kind": "places_candidates", "version": "v1", "counts": counts, "rows": [c.to_dict() for c in rows]}


def load_candidates(payload: Dict[str, Any]) -> List[PlaceCandidate]:
    return [PlaceCandidate.from_dict(r) for r in payload.get("rows") or []]


def place_type(types: Iterable[str]) -> str:
    return "salon" if set(types) & set(SALON_TYPES) else "unknown"


def match_table(
    candidates: Iterable[PlaceCandidate],
    min_score: int = AUTO_MATCH_MIN,
    review_sample: int = MATCH_REVIEW_SAMPLE,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split candidates into auto-matched (matchScore >= min_score) and needs-review.

    Returns:
        (places_matched payload, summary with counts and a needs-review sample)
    """
    rows: List[PlaceMatch] = []
    for c in candidates:
        rows.append(PlaceMatch(
            address_key=c.address_key,
            place_name=c.place_name,
            place_type=place_type(c.types),
            formatted_address=c.formatted_address,
            website=c.website or None,
            phone=c.phone or None,
            google_url=c.url or None,
            google_types=list(c.types),
            match_score=c.match_score,
            source=c.source,
            matched=c.match_score >= min_score,
        ))

    needs_review = [r for r in rows if not r.matched]
    counts = {"matched": len(rows) - len(needs_review), "needsReview": len(needs_review)}
    logger.info(f"Match table (minScore={min_score}): {counts}")
    payload = {
        "kind": "places_matched",
        "version": "v1",
        "minScore": min_score,
        "counts": counts,
        "rows": [r.to_dict() for r in rows],
    }
    summary = {
        "kind": "places_matched_summary",
        "version": "v1",
        "minScore": min_score,
        "counts": counts,
        "sampleNeedsReview": [r.to_dict() for r in needs_review[:review_sample]],
    }
    return payload, summary
