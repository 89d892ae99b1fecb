"""
Typed data models for the tech index pipeline.
All record shapes passed between stages and persisted in artifacts are defined here.

Artifacts use camelCase keys; `Record.to_dict` / `Record.from_dict` convert
between the snake_case attributes and the persisted shape.
"""
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union, get_args, get_origin, get_type_hints


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _dump(value: Any) -> Any:
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


def _load(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(hint)
    if origin is Union:
        inner = [a for a in get_args(hint) if a is not type(None)]
        return _load(inner[0], value) if len(inner) == 1 else value
    if origin in (list, List):
        (item,) = get_args(hint) or (Any,)
        return [_load(item, v) for v in value]
    if isinstance(hint, type) and issubclass(hint, Record) and isinstance(value, dict):
        return hint.from_dict(value)
    return value


class Record:
    """Mixin for dataclasses persisted as camelCase JSON objects."""

    def to_dict(self) -> Dict[str, Any]:
        return {camel(f.name): _dump(getattr(self, f.name)) for f in dataclasses.fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        hints = get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            key = camel(f.name)
            if key in data:
                kwargs[f.name] = _load(hints[f.name], data[key])
        return cls(**kwargs)


@dataclass
class AddressParts(Record):
    """Raw address fields as found on an input record."""
    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""


@dataclass
class Address(Record):
    """Normalized, denormalized address fields carried on aggregates."""
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""


@dataclass
class NameCount(Record):
    name: str
    count: int


@dataclass
class LicenseRow(Record):
    """One roster (license) record after field resolution and keying."""
    row_id: str
    license_number: str = ""
    full_name: str = ""
    entity_name: str = ""
    license_type: str = ""
    license_status: str = ""
    street: str = ""
    street_base: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    address_key: str = ""
    address_key_exact: str = ""
    address_key_base: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnchorCounts(Record):
    total: int = 0
    active: int = 0
    unique_names: int = 0
    unique_types: int = 0


@dataclass
class RosterAnchor(Record):
    """Address-level aggregate of roster rows."""
    address_key: str
    address: Address = field(default_factory=Address)
    counts: AnchorCounts = field(default_factory=AnchorCounts)
    top_names: List[NameCount] = field(default_factory=list)
    license_types: List[str] = field(default_factory=list)
    status_top: List[NameCount] = field(default_factory=list)
    bucket: str = "0"
    tier: str = "0"


@dataclass
class DensityRow(Record):
    """An anchor inside the density range, with ratio/score for ranking."""
    address_key: str
    address: Address = field(default_factory=Address)
    counts: AnchorCounts = field(default_factory=AnchorCounts)
    active_ratio: float = 0.0
    tier: str = "0"
    top_name: str = ""
    top_names: List[NameCount] = field(default_factory=list)
    status_top: List[NameCount] = field(default_factory=list)
    license_types: List[str] = field(default_factory=list)
    score: float = 0.0


@dataclass
class OrgCandidate(Record):
    name: str
    count: int
    share: float


@dataclass
class OrgSignal(Record):
    """Organizational signals derived from all licensees sharing an address."""
    address_key: str
    address_join_key: str
    licensee_count_at_address: int = 0
    active_licensees_at_address: int = 0
    expired_licensees_at_address: int = 0
    unknown_status_at_address: int = 0
    active_share: float = 0.0
    top_org_name: Optional[str] = None
    top_org_count: int = 0
    top_org_share: float = 0.0
    top5_org_candidates: List[OrgCandidate] = field(default_factory=list)
    is_po_box: bool = False
    is_office_towerish: bool = False
    is_likely_maildrop: bool = False


@dataclass
class FacilityRecord(Record):
    """A business/location record, enriched by the merge stages."""
    address_key: str
    rollup_key: Optional[str] = None
    business_name: str = "Unknown"
    status: str = "Unknown"
    license_number: str = ""
    tech_count_at_address: int = 0
    sample_tech_ids: List[str] = field(default_factory=list)
    bucket: str = "solo"
    has_reg: bool = False
    address_join_key: str = ""
    category: str = "independent-tech"
    needs_confirm: bool = False
    # org signals
    licensee_count_at_address: Optional[int] = None
    active_licensees_at_address: Optional[int] = None
    expired_licensees_at_address: Optional[int] = None
    unknown_status_at_address: Optional[int] = None
    active_share: Optional[float] = None
    top_org_name: Optional[str] = None
    top_org_count: Optional[int] = None
    top_org_share: Optional[float] = None
    top5_org_candidates: List[OrgCandidate] = field(default_factory=list)
    is_po_box: Optional[bool] = None
    is_office_towerish: Optional[bool] = None
    is_likely_maildrop: Optional[bool] = None
    business_name_candidate: Optional[str] = None
    business_name_candidate_share: Optional[float] = None
    franchise_brand_id: Optional[str] = None
    # confirmed place fields (manual overrides)
    place_type: Optional[str] = None
    place_name: Optional[str] = None
    place_confidence: Optional[float] = None
    place_notes: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    ig: Optional[str] = None
    maps_url: Optional[str] = None


@dataclass
class PlaceOverride(Record):
    """A human-confirmed fact sheet for an address awaiting confirmation."""
    address_key: str
    place_type: str = "unknown"  # suite | salon | home | maildrop | unknown
    place_name: Optional[str] = None
    franchise_brand_id: Optional[str] = None
    confidence: float = 0  # 0-100
    notes: str = ""
    maps_url: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    ig: Optional[str] = None


@dataclass
class PlaceQueueRow(Record):
    """An address queued for external place lookup."""
    address_key: str
    query: str
    name: str = "Unknown"
    category: str = ""
    tech_count_at_address: int = 0
    active_share: float = 0.0
    has_reg: bool = False
    score: float = 0


@dataclass
class PlaceCandidate(Record):
    """One place-lookup result keyed by address."""
    address_key: str
    query: str = ""
    place_name: str = ""
    formatted_address: str = ""
    website: str = ""
    phone: str = ""
    url: str = ""
    types: List[str] = field(default_factory=list)
    match_score: int = 0
    source: str = ""
    details_status: str = ""
    brand: str = ""
    category: str = ""


@dataclass
class PlaceMatch(Record):
    """A candidate with its auto-match decision."""
    address_key: str
    place_name: str = ""
    place_type: str = "unknown"  # salon | unknown
    formatted_address: str = ""
    website: Optional[str] = None
    phone: Optional[str] = None
    google_url: Optional[str] = None
    google_types: List[str] = field(default_factory=list)
    match_score: int = 0
    source: str = ""
    matched: bool = False


@dataclass
class Premise(Record):
    types: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    match_score: int = 0


@dataclass
class AddressNorm(Record):
    street_norm: str = ""
    street_base: str = ""


@dataclass
class TechSignals(Record):
    dora_licenses: int = 0
    tech_count_licenses: int = 0
    tech_count_unique: int = 0


@dataclass
class RosterJoin(Record):
    mode: str = "none"  # exact | norm | base | none


@dataclass
class RosterNames(Record):
    top_names: List[NameCount] = field(default_factory=list)
    sample: List[str] = field(default_factory=list)


@dataclass
class TechEntity(Record):
    """Final one-per-address output record."""
    id: str
    address_key: str
    address_key_exact: str = ""
    address_key_norm: str = ""
    address_key_base: str = ""
    address: Address = field(default_factory=Address)
    address_norm: AddressNorm = field(default_factory=AddressNorm)
    display_name: str = ""
    premise: Premise = field(default_factory=Premise)
    tech_signals: TechSignals = field(default_factory=TechSignals)
    roster_join: RosterJoin = field(default_factory=RosterJoin)
    roster_names: RosterNames = field(default_factory=RosterNames)
    roster_license_types: List[str] = field(default_factory=list)
    roster_summary: AnchorCounts = field(default_factory=AnchorCounts)
    segment: str = "unknown"
    segment_confidence: float = 0.0
    segment_signals: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
