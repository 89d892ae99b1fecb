# techindex/matchers/tech_entities.py

import dataclasses
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from techindex.address import (
    address_from_key,
    canonicalize_key,
    key_forms,
    normalize_key_string,
    slugify_address,
    split_address_key,
)
from techindex.models import (
    AddressNorm,
    LicenseRow,
    PlaceCandidate,
    Premise,
    RosterJoin,
    RosterNames,
    TechEntity,
    TechSignals,
)
from techindex.roster.indexer import RosterIndex, summarize_rows
from techindex.roster.rollup import top_counts

JOIN_MODES = ("exact", "norm", "base", "none")
ROSTER_TOP_NAMES = 5
ROSTER_SAMPLE = 10


def _uniq(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


def _tags(cand: PlaceCandidate) -> List[str]:
    tags = []
    if cand.category:
        tags.append(cand.category)
    if cand.brand:
        tags.append(f"brand:{cand.brand}")
    return tags


def new_entity(key: str, cand: PlaceCandidate) -> TechEntity:
    forms = key_forms(cand.address_key)
    address = address_from_key(forms.norm)
    return TechEntity(
        id=slugify_address(address),
        address_key=key,
        address_key_exact=forms.exact,
        address_key_norm=forms.norm,
        address_key_base=forms.base,
        address=address,
        address_norm=AddressNorm(
            street_norm=split_address_key(forms.norm).street1,
            street_base=split_address_key(forms.base).street1,
        ),
        display_name=cand.place_name,
        premise=Premise(
            types=list(cand.types),
            phone=cand.phone or None,
            website=cand.website or None,
            match_score=cand.match_score,
        ),
        tags=_tags(cand),
    )


def update_entity(entity: TechEntity, cand: PlaceCandidate) -> None:
    """Fold another candidate for the same address into an existing entity."""
    if not entity.display_name and cand.place_name:
        entity.display_name = cand.place_name
    entity.premise.match_score = max(entity.premise.match_score, cand.match_score)
    if not entity.premise.phone and cand.phone:
        entity.premise.phone = cand.phone
    if not entity.premise.website and cand.website:
        entity.premise.website = cand.website
    entity.premise.types = _uniq(entity.premise.types + cand.types)
    entity.tags = _uniq(entity.tags + _tags(cand))


def build_tech_entities(candidates: Iterable[PlaceCandidate]) -> Tuple[List[TechEntity], Dict[str, int]]:
    """
    One entity per distinct address: created on first sight, updated in place after.

    Returns:
        (entities sorted by addressKey, counts {candidates, entities, skippedNoKey})
    """
    by_key: Dict[str, TechEntity] = {}
    seen = 0
    skipped = 0
    for cand in candidates:
        seen += 1
        key = canonicalize_key(cand.address_key)
        if not key:
            skipped += 1
            logger.debug(f"Unkeyable candidate address: {cand.address_key!r}")
            continue
        entity = by_key.get(key)
        if entity is None:
            by_key[key] = new_entity(key, cand)
        else:
            update_entity(entity, cand)

    entities = sorted(by_key.values(), key=lambda e: e.address_key)
    for e in entities:
        if not e.display_name:
            e.display_name = e.address.street or e.address_key
    counts = {"candidates": seen, "entities": len(entities), "skippedNoKey": skipped}
    logger.info(f"Tech entities: {counts}")
    return entities, counts


def city_zip_index(entities: Iterable[TechEntity]) -> Dict[str, Dict[str, List[str]]]:
    by_city: Dict[str, List[str]] = defaultdict(list)
    by_zip: Dict[str, List[str]] = defaultdict(list)
    for e in entities:
        if e.address.city:
            by_city[e.address.city].append(e.id)
        if e.address.zip:
            by_zip[e.address.zip].append(e.id)
    return {
        "byCity": {k: sorted(v) for k, v in sorted(by_city.items())},
        "byZip": {k: sorted(v) for k, v in sorted(by_zip.items())},
    }


class RosterJoiner:
    """
    Attaches roster license rows to tech entities.

    Tries the exact key (same spelling before abbreviation), then the
    canonical or re-normalized key, then the unit-stripped base key; the tier
    that hit is recorded on the entity as rosterJoin.mode.
    """

    def __init__(self, index: RosterIndex):
        self.index = index

    def match(self, entity: TechEntity) -> Tuple[str, List[LicenseRow]]:
        rows = self.index.by_address_key.get(entity.address_key)
        if rows:
            # same canonical key; "exact" only when some row was spelled the same before abbreviation
            if entity.address_key_exact and any(r.address_key_exact == entity.address_key_exact for r in rows):
                return "exact", rows
            return "norm", rows
        rows = self.index.by_address_key_norm.get(normalize_key_string(entity.address_key_norm))
        if rows:
            return "norm", rows
        rows = self.index.by_address_key_base.get(entity.address_key_base)
        if rows:
            return "base", rows
        return "none", []

    def join(self, entity: TechEntity) -> TechEntity:
        mode, rows = self.match(entity)
        joined = dataclasses.replace(entity, roster_join=RosterJoin(mode=mode))
        if not rows:
            return joined

        names = [r.full_name for r in rows]
        ranked = top_counts(names, ROSTER_TOP_NAMES)
        joined.tech_signals = TechSignals(
            dora_licenses=len(rows),
            tech_count_licenses=len(_uniq(r.license_number for r in rows)),
            tech_count_unique=len(_uniq(names)),
        )
        joined.roster_names = RosterNames(top_names=ranked, sample=_uniq(names)[:ROSTER_SAMPLE])
        joined.roster_license_types = _uniq(r.license_type for r in rows)[:ROSTER_SAMPLE]
        joined.roster_summary = summarize_rows(rows)

        # only a single-occupant address may take the licensee's name
        if len(rows) == 1 and len(ranked) == 1:
            joined.display_name = ranked[0].name
        return joined


def join_roster(
    entities: Iterable[TechEntity],
    index: RosterIndex,
) -> Tuple[List[TechEntity], Dict[str, Any]]:
    """
    Run the join cascade over all entities.

    Returns:
        (joined entities, counts {tech, joined, missing, modes})
    """
    joiner = RosterJoiner(index)
    out = [joiner.join(e) for e in entities]
    modes = {m: 0 for m in JOIN_MODES}
    for e in out:
        modes[e.roster_join.mode] += 1
    counts = {
        "tech": len(out),
        "joined": len(out) - modes["none"],
        "missing": modes["none"],
        "modes": modes,
    }
    logger.info(f"Roster join: {counts}")
    missing = next((e.address_key for e in out if e.roster_join.mode == "none"), None)
    if missing:
        logger.warning(f"{counts['missing']} entities without roster rows, e.g. {missing}")
    return out, counts


def join_gap_report(
    entities: Iterable[TechEntity],
    index: RosterIndex,
    sample: int = 25,
) -> Dict[str, Any]:
    """
    For entities that missed every join tier, list roster keys on the same
    street (other city or zip) so key drift can be spotted by eye.
    """
    by_street: Dict[str, List[str]] = defaultdict(list)
    for key in index.by_address_key_base:
        by_street[split_address_key(key).street1].append(key)

    misses = [e for e in entities if e.roster_join.mode == "none"]
    rows: List[Dict[str, Optional[Any]]] = []
    for e in misses[:sample]:
        street = split_address_key(e.address_key_base).street1
        rows.append({
            "addressKey": e.address_key,
            "addressKeyNorm": e.address_key_norm,
            "addressKeyBase": e.address_key_base,
            "exactHit": e.address_key in index.by_address_key,
            "normHit": normalize_key_string(e.address_key_norm) in index.by_address_key_norm,
            "baseHit": e.address_key_base in index.by_address_key_base,
            "sameStreetKeys": sorted(by_street.get(street, []))[:3],
        })
    return {"counts": {"missing": len(misses), "sampled": len(rows)}, "rows": rows}


def tech_payload(entities: List[TechEntity], counts: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "kind": "tech_index",
        "version": "v1",
        "counts": counts,
        "index": city_zip_index(entities),
        "tech": [e.to_dict() for e in entities],
    }


def load_tech(payload: Dict[str, Any]) -> List[TechEntity]:
    return [TechEntity.from_dict(t) for t in payload.get("tech") or []]
