"""
Canonical address keying.

Every stage keys addresses through this module. The canonical AddressKey is
`STREET | CITY | STATE | ZIP` where STREET is street1 + street2, token-normalized
and abbreviated, and ZIP is the first five digits (omitted when absent).

Three forms exist per physical address, most specific first:
    exact - token-normalized street, no abbreviation
    norm  - abbreviated street (the canonical key)
    base  - abbreviated street with trailing unit tokens stripped

Keys produced by the older 5-field facility scheme
(`ADDRESS1 | ADDRESS2 | CITY | STATE | ZIP`) and ids produced by the older
10-hex-char scheme are accepted only through `canonicalize_key` and
`build_id_migration`.
"""
import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Union

from techindex.models import Address, AddressParts

KEY_SEP = " | "
ID_PREFIX = "addr_"
ID_HEX_LEN = 16
LEGACY_ID_HEX_LEN = 10
MAX_FOLD_PASSES = 4

STREET_ABBREVIATIONS = {
    "STREET": "ST",
    "AVENUE": "AVE",
    "ROAD": "RD",
    "DRIVE": "DR",
    "BOULEVARD": "BLVD",
    "LANE": "LN",
    "COURT": "CT",
    "PLACE": "PL",
    "PARKWAY": "PKWY",
    "HIGHWAY": "HWY",
    "CIRCLE": "CIR",
    "TERRACE": "TER",
    "NORTH": "N",
    "SOUTH": "S",
    "EAST": "E",
    "WEST": "W",
    "SUITE": "STE",
    "APARTMENT": "APT",
    "FLOOR": "FL",
    "ROOM": "RM",
}

_SMART_QUOTES = str.maketrans({"‘": "'", "’": "'", "“": '"', "”": '"'})
_QUOTES_RE = re.compile(r"[\"'`]")
_NOISE_RE = re.compile(r"[.,;|]")
_KEY_NOISE_RE = re.compile(r"[.,;]")
_SPACE_RE = re.compile(r"\s+")
_HASH_GAP_RE = re.compile(r"#\s+(?=\S)")
_UNIT_RE = re.compile(r"\s+(?:STE|SUITE|APT|APARTMENT|UNIT|FL|FLOOR|RM|ROOM)\s+[A-Z0-9\-]+$")
_HASH_UNIT_RE = re.compile(r"\s*#\s*[A-Z0-9\-]+$")
_JOIN_NOISE_RE = re.compile(r"[^A-Z0-9|# ]+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class AddressKeyForms:
    exact: str
    norm: str
    base: str


@dataclass(frozen=True)
class AddressId:
    id: str
    normalized_key: str


def _fold(text: str) -> str:
    # NFKC on both sides of upper(): compatibility forms can fold to lowercase,
    # and uppercasing can leave decomposed sequences
    text = unicodedata.normalize("NFKC", text).translate(_SMART_QUOTES)
    text = unicodedata.normalize("NFKC", text.upper())
    text = _QUOTES_RE.sub("", text)
    text = _NOISE_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def normalize_token(value: Optional[str]) -> str:
    """
    Uppercase, fold quotes, strip punctuation noise (the key delimiter `|`
    included), collapse whitespace.

    Folding repeats until the text is stable, so the result is a fixed point:
    normalize_token(normalize_token(s)) == normalize_token(s).
    """
    if value is None:
        return ""
    text = str(value)
    for _ in range(MAX_FOLD_PASSES):
        folded = _fold(text)
        if folded == text:
            break
        text = folded
    return text


def expand_street_abbrev(value: Optional[str]) -> str:
    text = _HASH_GAP_RE.sub("#", normalize_token(value))
    return " ".join(STREET_ABBREVIATIONS.get(token, token) for token in text.split(" ") if token)


def strip_unit_tokens(value: Optional[str]) -> str:
    """Remove trailing unit markers (STE 200, UNIT B, #4, ...) until none remain."""
    text = expand_street_abbrev(value)
    while True:
        stripped = _HASH_UNIT_RE.sub("", _UNIT_RE.sub("", text)).strip()
        if stripped == text or not stripped:
            return stripped or text
        text = stripped


def normalize_zip(value: Optional[str]) -> str:
    return re.sub(r"[^0-9]", "", str(value or ""))[:5]


def _street(parts: AddressParts) -> str:
    return " ".join(p for p in (normalize_token(parts.street1), normalize_token(parts.street2)) if p)


def _join(street: str, city: str, state: str, zip5: str) -> str:
    if not street or not city or not state:
        return ""
    fields = [street, city, state]
    if zip5:
        fields.append(zip5)
    return KEY_SEP.join(fields)


def _as_parts(value: Union[AddressParts, str]) -> AddressParts:
    return split_address_key(value) if isinstance(value, str) else value


def build_key(parts: AddressParts) -> str:
    """Canonical key, or "" when street1, city or state is missing (exclude, don't fail)."""
    if not normalize_token(parts.street1):
        return ""
    return key_forms(parts).norm


def key_forms(value: Union[AddressParts, str]) -> AddressKeyForms:
    parts = _as_parts(value)
    if not normalize_token(parts.street1):
        return AddressKeyForms("", "", "")
    street = _street(parts)
    city = normalize_token(parts.city)
    state = normalize_token(parts.state)
    zip5 = normalize_zip(parts.zip)
    return AddressKeyForms(
        exact=_join(street, city, state, zip5),
        norm=_join(expand_street_abbrev(street), city, state, zip5),
        base=_join(strip_unit_tokens(street), city, state, zip5),
    )


def split_address_key(key: str) -> AddressParts:
    """Parse a 3, 4 or 5 field key back into parts (5 = street1/street2 variant)."""
    fields = [f.strip() for f in str(key or "").split("|")]
    if len(fields) >= 5:
        return AddressParts(fields[0], fields[1], fields[2], fields[3], fields[4])
    if len(fields) == 4:
        if normalize_zip(fields[3]) or not fields[3]:
            return AddressParts(fields[0], "", fields[1], fields[2], fields[3])
        # ADDRESS1 | ADDRESS2 | CITY | STATE without zip
        return AddressParts(fields[0], fields[1], fields[2], fields[3], "")
    if len(fields) == 3:
        return AddressParts(fields[0], "", fields[1], fields[2], "")
    return AddressParts(street1=fields[0] if fields else "")


def canonicalize_key(key: str) -> str:
    """Re-key any supported key string into the canonical form."""
    return key_forms(split_address_key(key)).norm


def address_from_key(key: str) -> Address:
    parts = split_address_key(key)
    street = " ".join(p for p in (parts.street1, parts.street2) if p)
    return Address(street=street, city=parts.city, state=parts.state, zip=parts.zip)


def query_from_key(key: str) -> str:
    return re.sub(r"\s*\|\s*", " ", str(key or "")).strip()


def address_join_key(key: str) -> str:
    text = str(key or "").upper().translate(_SMART_QUOTES)
    text = re.sub(r"\s*\|\s*", "|", text)
    text = _JOIN_NOISE_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def normalize_key_string(key: str) -> str:
    """Light normalization of an already-built key, used for the norm join tier."""
    text = _KEY_NOISE_RE.sub(" ", str(key or "").upper())
    return _SPACE_RE.sub(" ", text).strip()


def slugify_address(address: Address) -> str:
    raw = f"{address.street}|{address.city}|{address.state}|{address.zip}"
    return _SLUG_RE.sub("-", raw.lower()).strip("-")


def compute_address_id(parts: AddressParts) -> AddressId:
    """Stable id over the normalized fields: addr_ + 16 hex chars of SHA-1."""
    forms = key_forms(parts)
    fields = split_address_key(forms.norm) if forms.norm else AddressParts()
    normalized_key = "|".join([fields.street1, fields.city, fields.state, normalize_zip(fields.zip)])
    digest = hashlib.sha1(normalized_key.encode("utf-8")).hexdigest()[:ID_HEX_LEN]
    return AddressId(id=f"{ID_PREFIX}{digest}", normalized_key=normalized_key)


def legacy_address_id(street1: str, city: str, state: str, zip_code: str, default_state: str = "CO") -> str:
    """The retired 10-hex-char scheme. Only used to backfill artifacts keyed under it."""
    def norm(value: str) -> str:
        return _SPACE_RE.sub(" ", str(value or "").strip().upper())

    raw = f"{norm(street1)}|{norm(city)}|{norm(state or default_state)}|{normalize_zip(zip_code)}"
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:LEGACY_ID_HEX_LEN]
    return f"{ID_PREFIX}{digest}"


def build_id_migration(parts_list: Iterable[AddressParts]) -> Dict[str, str]:
    """Map legacy ids to canonical ids for every address seen."""
    mapping: Dict[str, str] = {}
    for parts in parts_list:
        if not build_key(parts):
            continue
        legacy = legacy_address_id(parts.street1, parts.city, parts.state, parts.zip)
        mapping.setdefault(legacy, compute_address_id(parts).id)
    return mapping
