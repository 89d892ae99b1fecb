import json
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from loguru import logger

from techindex.address import build_key, key_forms, normalize_key_string, normalize_token, normalize_zip
from techindex.config import DEFAULT_STATE
from techindex.errors import MissingInputError
from techindex.fields import FieldResolver, roster_fields
from techindex.models import AddressParts, AnchorCounts, LicenseRow
from techindex.storage import sha256_text

REQUIRED_ROSTER_FIELDS = ("street1", "city", "license_number")
SCHEMA_SAMPLE_ROWS = 50


def sniff_format(path: Path) -> str:
    ext = path.suffix.lower()
    if ext == ".jsonl":
        return "jsonl"
    if ext == ".json":
        return "json"
    if ext == ".csv":
        return "csv"
    return "unknown"


def load_roster_records(path, label: str = "roster export") -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """
    Load a raw export (csv, json or jsonl) into a list of dict rows.

    Returns:
        (records, source) where source describes path, format, sha256 and record count.
    """
    path = Path(path)
    if not path.is_file():
        raise MissingInputError(label, [path])

    fmt = sniff_format(path)
    text = path.read_text(encoding="utf-8")
    corrupt = 0
    if fmt == "csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        records = df.to_dict(orient="records")
    elif fmt == "jsonl":
        records = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                corrupt += 1
    elif fmt == "json":
        data = json.loads(text)
        records = data if isinstance(data, list) else (data.get("rows") or data.get("data") or [])
    else:
        raise ValueError(f"Unknown format for {path} (expected .csv, .json or .jsonl)")

    if corrupt:
        logger.warning(f"Skipped {corrupt} unparseable lines in {path}")
    if not records:
        raise MissingInputError(label, [path], reason="zero rows")

    source = {"path": str(path), "format": fmt, "sha256": sha256_text(text), "records": len(records)}
    return records, source


def is_active_status(status: Optional[str]) -> bool:
    """Loose on purpose: any status containing ACTIVE counts, including INACTIVE."""
    return "ACTIVE" in str(status or "").upper()


def summarize_rows(rows: List[LicenseRow]) -> AnchorCounts:
    names = {r.full_name for r in rows if r.full_name}
    types = {r.license_type for r in rows if r.license_type}
    return AnchorCounts(
        total=len(rows),
        active=sum(1 for r in rows if is_active_status(r.license_status)),
        unique_names=len(names),
        unique_types=len(types),
    )


def to_license_row(
    record: Dict[str, Any],
    idx: int,
    resolver: FieldResolver = roster_fields,
    default_state: str = DEFAULT_STATE,
) -> Tuple[Optional[LicenseRow], Optional[str]]:
    """
    Resolve one raw roster record into a keyed LicenseRow.

    Returns:
        (row, None) on success, or (None, reason) where reason is
        "no_tech" (no license identifier) or "no_addr" (cannot be keyed).
    """
    license_number = resolver.get(record, "license_number")
    if not license_number:
        return None, "no_tech"

    parts = AddressParts(
        street1=resolver.get(record, "street1"),
        street2=resolver.get(record, "street2"),
        city=resolver.get(record, "city"),
        state=resolver.get(record, "state") or default_state,
        zip=resolver.get(record, "zip"),
    )
    if not build_key(parts):
        return None, "no_addr"

    forms = key_forms(parts)
    street, city, state, *_ = [f.strip() for f in forms.norm.split("|")]
    base_street = forms.base.split("|")[0].strip()

    full_name = resolver.get(record, "full_name")
    if not full_name:
        full_name = f"{resolver.get(record, 'first_name')} {resolver.get(record, 'last_name')}"

    row = LicenseRow(
        row_id=str(idx + 1),
        license_number=license_number,
        full_name=normalize_token(full_name),
        entity_name=normalize_token(resolver.get(record, "entity_name")),
        license_type=normalize_token(resolver.get(record, "license_type")),
        license_status=normalize_token(resolver.get(record, "status")),
        street=street,
        street_base=base_street,
        city=city,
        state=state,
        zip=normalize_zip(parts.zip),
        address_key=forms.norm,
        address_key_exact=forms.exact,
        address_key_base=forms.base,
        raw=dict(record),
    )
    return row, None


class RosterIndex:
    """Roster rows grouped by canonical address key, with base and norm lookups."""

    def __init__(
        self,
        by_address_key: Dict[str, List[LicenseRow]],
        by_address_key_base: Optional[Dict[str, List[LicenseRow]]] = None,
        counts: Optional[Dict[str, int]] = None,
        skipped_samples: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.by_address_key = by_address_key
        if by_address_key_base is None:
            by_address_key_base = defaultdict(list)
            for rows in by_address_key.values():
                for r in rows:
                    if r.address_key_base:
                        by_address_key_base[r.address_key_base].append(r)
            by_address_key_base = dict(by_address_key_base)
        self.by_address_key_base = by_address_key_base
        self.counts = counts or {}
        self.skipped_samples = skipped_samples or {}
        self._norm: Optional[Dict[str, List[LicenseRow]]] = None

    @property
    def by_address_key_norm(self) -> Dict[str, List[LicenseRow]]:
        """Roster keys re-normalized in memory, so formatting drift still joins."""
        if self._norm is None:
            norm: Dict[str, List[LicenseRow]] = defaultdict(list)
            for key, rows in self.by_address_key.items():
                norm[normalize_key_string(key)].extend(rows)
            self._norm = dict(norm)
        return self._norm

    def summary(self, key: str) -> AnchorCounts:
        return summarize_rows(self.by_address_key.get(key, []))

    def to_dict(self, source: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "kind": "roster_index",
            "version": "v1",
            "source": source or {},
            "counts": self.counts,
            "byAddressKey": {k: [r.to_dict() for r in rows] for k, rows in self.by_address_key.items()},
            "byAddressKeyBase": {k: [r.to_dict() for r in rows] for k, rows in self.by_address_key_base.items()},
            "byAddressSummary": {k: self.summary(k).to_dict() for k in self.by_address_key},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RosterIndex":
        def load(groups: Dict[str, List[Dict[str, Any]]]) -> Dict[str, List[LicenseRow]]:
            return {k: [LicenseRow.from_dict(r) for r in rows] for k, rows in (groups or {}).items()}

        return cls(
            by_address_key=load(data.get("byAddressKey")),
            by_address_key_base=load(data.get("byAddressKeyBase")),
            counts=data.get("counts") or {},
        )


def build_roster_index(
    records: List[Dict[str, Any]],
    resolver: FieldResolver = roster_fields,
    default_state: str = DEFAULT_STATE,
) -> RosterIndex:
    """
    Group roster records by canonical address key.

    Rows without a license identifier count toward skippedNoTech, rows that
    cannot be keyed toward skippedNoAddr; neither aborts the batch.
    """
    if records:
        columns = set()
        for rec in records[:SCHEMA_SAMPLE_ROWS]:
            columns.update(rec.keys())
        resolver.require(columns, REQUIRED_ROSTER_FIELDS, sample=records[0])

    by_key: Dict[str, List[LicenseRow]] = defaultdict(list)
    skipped = Counter()
    samples: Dict[str, Dict[str, Any]] = {}

    for idx, record in enumerate(records):
        row, reason = to_license_row(record, idx, resolver, default_state)
        if row is None:
            skipped[reason] += 1
            samples.setdefault(reason, dict(record))
            continue
        by_key[row.address_key].append(row)

    index = RosterIndex(dict(by_key))
    index.counts = {
        "rows": len(records),
        "withAddressKey": sum(len(v) for v in index.by_address_key.values()),
        "skippedNoAddr": skipped["no_addr"],
        "skippedNoTech": skipped["no_tech"],
        "uniqAddressKey": len(index.by_address_key),
        "uniqAddressKeyBase": len(index.by_address_key_base),
    }
    index.skipped_samples = samples
    logger.info(f"Roster index: {index.counts}")
    for reason, sample in samples.items():
        logger.warning(f"Skipped roster rows ({reason}), e.g. {sample}")
    return index


def audit_fields(index: RosterIndex, sample: int = 500, top: int = 40) -> List[Dict[str, Any]]:
    """Most frequently populated raw export fields over the first row of each address."""
    counts: Counter = Counter()
    for n, rows in enumerate(index.by_address_key.values()):
        if n >= sample:
            break
        for key, value in (rows[0].raw or {}).items():
            if value is not None and str(value).strip():
                counts[key] += 1
    return [{"field": k, "count": c} for k, c in counts.most_common(top)]
