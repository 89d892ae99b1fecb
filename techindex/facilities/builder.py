"""
Facility records: one per physical address, from business registrations plus
the licensees keyed to the same address.
"""
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from loguru import logger

from techindex.address import build_key, canonicalize_key, split_address_key
from techindex.config import DEFAULT_STATE, INDIE_TECH_MAX, METRO_CITIES, METRO_ONLY, SAMPLE_TECH_IDS
from techindex.fields import FieldResolver, registration_fields, roster_fields
from techindex.models import AddressParts, FacilityRecord

_STATUS_RANK = {"Active": 3, "Unknown": 2, "Expired": 1}


def normalize_reg_status(value: Any) -> str:
    v = str(value or "").strip().lower()
    if not v:
        return "Unknown"
    if "inactive" in v or "expire" in v or "lapsed" in v:
        return "Expired"
    if "active" in v:
        return "Active"
    return "Unknown"


def bucket_for_count(n: int) -> str:
    if n <= 1:
        return "solo"
    if n <= INDIE_TECH_MAX:
        return "indie"
    return "suite-signal"


def tech_ids_by_address(
    records: Iterable[Dict[str, Any]],
    resolver: FieldResolver = roster_fields,
    default_state: str = DEFAULT_STATE,
) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Distinct license ids per canonical address key.

    Returns:
        (groups, counts) with counts {addresses, skippedNoAddr, skippedNoTech, topAddressCount}.
    """
    groups: Dict[str, set] = defaultdict(set)
    skipped_no_addr = 0
    skipped_no_tech = 0
    for r in records:
        tech_id = resolver.get(r, "license_number")
        if not tech_id:
            skipped_no_tech += 1
            continue
        key = build_key(AddressParts(
            street1=resolver.get(r, "street1"),
            street2=resolver.get(r, "street2"),
            city=resolver.get(r, "city"),
            state=resolver.get(r, "state") or default_state,
            zip=resolver.get(r, "zip"),
        ))
        if not key:
            skipped_no_addr += 1
            continue
        groups[key].add(tech_id)

    out = {k: sorted(v) for k, v in groups.items()}
    counts = {
        "addresses": len(out),
        "skippedNoAddr": skipped_no_addr,
        "skippedNoTech": skipped_no_tech,
        "topAddressCount": max((len(v) for v in out.values()), default=0),
    }
    return out, counts


def registration_key(reg: Mapping[str, Any], resolver: FieldResolver = registration_fields) -> str:
    """Canonical key for a registration: re-key an existing key, else build from parts."""
    existing = resolver.get(reg, "address_key")
    if existing and "|" in existing:
        return canonicalize_key(existing)
    return build_key(AddressParts(
        street1=resolver.get(reg, "street1"),
        street2=resolver.get(reg, "street2"),
        city=resolver.get(reg, "city"),
        state=resolver.get(reg, "state"),
        zip=resolver.get(reg, "zip"),
    ))


def _prefer(candidate: Mapping[str, Any], current: Mapping[str, Any], resolver: FieldResolver) -> bool:
    """Deterministic choice between two registrations at one address."""
    a = _STATUS_RANK[normalize_reg_status(resolver.get(candidate, "status"))]
    b = _STATUS_RANK[normalize_reg_status(resolver.get(current, "status"))]
    if a != b:
        return a > b
    la = resolver.get(candidate, "license_number")
    lb = resolver.get(current, "license_number")
    if la and lb and la != lb:
        return la < lb
    if la and not lb:
        return True
    if lb and not la:
        return False
    return resolver.get(candidate, "business_name", "Unknown") < resolver.get(current, "business_name", "Unknown")


def is_metro(address_key: str, cities: Iterable[str] = METRO_CITIES) -> bool:
    return split_address_key(address_key).city.upper() in set(cities)


def build_facilities(
    registrations: Iterable[Dict[str, Any]],
    tech_groups: Mapping[str, List[str]],
    rollup_map: Optional[Mapping[str, str]] = None,
    metro_only: bool = METRO_ONLY,
    resolver: FieldResolver = registration_fields,
) -> Dict[str, Any]:
    """Union registration and licensee addresses into facility records, sorted by key."""
    rollup_map = rollup_map or {}
    reg_by_key: Dict[str, Mapping[str, Any]] = {}
    skipped = 0
    for reg in registrations:
        key = registration_key(reg, resolver)
        if not key:
            skipped += 1
            continue
        current = reg_by_key.get(key)
        if current is None or _prefer(reg, current, resolver):
            reg_by_key[key] = reg

    rows: List[FacilityRecord] = []
    outside_metro = 0
    for key in sorted(set(reg_by_key) | set(tech_groups)):
        if metro_only and not is_metro(key):
            outside_metro += 1
            continue
        reg = reg_by_key.get(key, {})
        tech_ids = sorted(tech_groups.get(key, []))
        rows.append(FacilityRecord(
            address_key=key,
            rollup_key=resolver.get(reg, "rollup_key") or rollup_map.get(key) or None,
            business_name=resolver.get(reg, "business_name", "Unknown"),
            status=normalize_reg_status(resolver.get(reg, "status")),
            license_number=resolver.get(reg, "license_number"),
            tech_count_at_address=len(tech_ids),
            sample_tech_ids=tech_ids[:SAMPLE_TECH_IDS],
            bucket=bucket_for_count(len(tech_ids)),
        ))

    counts = {
        "facilities": len(rows),
        "withTechs": sum(1 for r in rows if r.tech_count_at_address > 0),
        "suiteSignal": sum(1 for r in rows if r.bucket == "suite-signal"),
        "skippedRegNoAddr": skipped,
        "outsideMetro": outside_metro,
    }
    logger.info(f"Facilities: {counts}")
    return {"kind": "facilities", "version": "v1", "counts": counts, "rows": [r.to_dict() for r in rows]}
