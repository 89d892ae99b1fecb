import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd
from loguru import logger

from techindex.address import address_join_key, key_forms
from techindex.config import (
    DEFAULT_STATE,
    MAILDROP_MAX_ORG_SHARE,
    MAILDROP_MIN_LICENSEES,
    MIN_ORG_NAME_LEN,
    ORG_TOP_K,
)
from techindex.fields import FieldResolver, roster_fields
from techindex.models import AddressParts, OrgCandidate, OrgSignal

ACTIVE_WORDS = ("active", "current", "valid", "good standing", "renew", "issued", "approved", "clear")
EXPIRED_WORDS = ("expire", "lapse", "closed", "revok", "suspend", "denied", "relinquish", "retired")

_ORG_NOISE_RE = re.compile(r"[^A-Z0-9# ]+")


def normalize_text(value: str) -> str:
    text = str(value or "").upper()
    text = re.sub(r"[‘’“”]", '"', text)
    text = text.replace("&", " AND ")
    text = _ORG_NOISE_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_org_name(value: str) -> str:
    text = normalize_text(value)
    text = re.sub(r"\b(LLC)(\s+LLC)+\b", "LLC", text)
    return re.sub(r"\b(INC)(\s+INC)+\b", "INC", text)


def status_bucket(description: str, expiration: str = "", now: Optional[datetime] = None) -> str:
    """
    Active / Expired / Unknown from the status text, falling back to the expiration date.

    "inactive" is checked first since it contains "active".
    """
    v = str(description or "").strip().lower()
    if v:
        if "inactive" in v:
            return "Expired"
        if any(word in v for word in ACTIVE_WORDS):
            return "Active"
        if any(word in v for word in EXPIRED_WORDS):
            return "Expired"

    expires = pd.to_datetime(expiration, errors="coerce", utc=True) if str(expiration or "").strip() else pd.NaT
    if not pd.isna(expires):
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return "Active" if expires.to_pydatetime() >= now else "Expired"
    return "Unknown"


def is_po_box(text: str) -> bool:
    v = normalize_text(text)
    return "PO BOX" in v or "P O BOX" in v or v.startswith("BOX ")


def is_office_towerish(address_key: str) -> bool:
    v = f" {normalize_text(address_key)} "
    return any(token in v for token in (" STE ", " FL ", " FLOOR ", " SUITE "))


@dataclass
class _AddressTally:
    address_key: str
    join_key: str
    n: int = 0
    active: int = 0
    expired: int = 0
    unknown: int = 0
    orgs: Counter = field(default_factory=Counter)
    any_po_box: bool = False
    any_officeish: bool = False


def build_org_signals(
    records: List[Dict[str, Any]],
    resolver: FieldResolver = roster_fields,
    default_state: str = DEFAULT_STATE,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Aggregate licensee records into per-address organizational signals.

    The top org share is taken over all licensees at the address (strict), and an
    address is a likely maildrop when it is a PO box, or tower-like with many
    licensees and no dominant organization.
    """
    tallies: Dict[str, _AddressTally] = {}
    status_freq: Counter = Counter()
    skipped = 0

    for r in records:
        parts = AddressParts(
            street1=resolver.get(r, "street1"),
            street2=resolver.get(r, "street2"),
            city=resolver.get(r, "city"),
            state=resolver.get(r, "state") or default_state,
            zip=resolver.get(r, "zip"),
        )
        address_key = key_forms(parts).norm
        if not address_key:
            skipped += 1
            continue
        join_key = address_join_key(address_key)

        description = resolver.get(r, "status")
        status_freq[description or "(empty)"] += 1
        bucket = status_bucket(description, resolver.get(r, "expiration"), now)

        tally = tallies.setdefault(join_key, _AddressTally(address_key=address_key, join_key=join_key))
        tally.n += 1
        if bucket == "Active":
            tally.active += 1
        elif bucket == "Expired":
            tally.expired += 1
        else:
            tally.unknown += 1

        org = normalize_org_name(resolver.get(r, "entity_name"))
        if len(org) >= MIN_ORG_NAME_LEN:
            tally.orgs[org] += 1

        tally.any_po_box = tally.any_po_box or is_po_box(parts.street1) or is_po_box(parts.street2)
        tally.any_officeish = tally.any_officeish or is_office_towerish(address_key)

    rows = [_to_signal(t) for t in tallies.values()]
    rows.sort(key=lambda o: (-o.licensee_count_at_address, -o.active_licensees_at_address, o.address_key))

    counts = {
        "addresses": len(rows),
        "skippedNoAddr": skipped,
        "topAddressCount": rows[0].licensee_count_at_address if rows else 0,
        "likelyMaildrops": sum(1 for o in rows if o.is_likely_maildrop),
    }
    logger.info(f"Org signals: {counts}")
    return {
        "kind": "address_org_signals",
        "version": "v1",
        "counts": counts,
        "rows": [o.to_dict() for o in rows],
        "debug": {
            "topLicenseStatusDescriptions": [
                {"status": s, "count": c} for s, c in status_freq.most_common(25)
            ]
        },
    }


def _to_signal(t: _AddressTally) -> OrgSignal:
    total = t.n
    ranked = sorted(t.orgs.items(), key=lambda kv: (-kv[1], kv[0]))
    top_name, top_count = ranked[0] if ranked else (None, 0)
    top_share = top_count / total if total else 0.0
    return OrgSignal(
        address_key=t.address_key,
        address_join_key=t.join_key,
        licensee_count_at_address=total,
        active_licensees_at_address=t.active,
        expired_licensees_at_address=t.expired,
        unknown_status_at_address=t.unknown,
        active_share=round(t.active / total if total else 0.0, 4),
        top_org_name=top_name,
        top_org_count=top_count,
        top_org_share=round(top_share, 4),
        top5_org_candidates=[
            OrgCandidate(name=name, count=count, share=round(count / total if total else 0.0, 4))
            for name, count in ranked[:ORG_TOP_K]
        ],
        is_po_box=t.any_po_box,
        is_office_towerish=t.any_officeish,
        is_likely_maildrop=t.any_po_box
        or (t.any_officeish and total >= MAILDROP_MIN_LICENSEES and top_share < MAILDROP_MAX_ORG_SHARE),
    )
