import json

import pytest

from techindex.errors import MissingInputError, SchemaDriftError
from techindex.models import AnchorCounts, LicenseRow, RosterAnchor
from techindex.roster.indexer import (
    RosterIndex,
    build_roster_index,
    audit_fields,
    is_active_status,
    load_roster_records,
    summarize_rows,
)
from techindex.roster.rollup import bucket, build_anchor, build_rollup, load_anchors, tier, top_anchors, top_counts


def roster_record(license_number, name, street, status="ACTIVE", city="Denver", zip_code="80202", license_type="Cosmetologist"):
    return {
        "License Number": license_number,
        "Formatted Name": name,
        "Address Line 1": street,
        "City": city,
        "State": "CO",
        "Mail Zip Code": zip_code,
        "License Status Description": status,
        "License Type": license_type,
    }


def test_active_status_is_a_loose_substring_match():
    """Preserved for compatibility: INACTIVE also contains ACTIVE."""
    assert is_active_status("Active")
    assert is_active_status("ACTIVE - RENEWED")
    assert is_active_status("Inactive")
    assert not is_active_status("Expired")
    assert not is_active_status(None)


def test_index_groups_rows_and_counts_skips():
    records = [
        roster_record("C1", "Jane Doe", "123 Main Street"),
        roster_record("C2", "Ann Lee", "123 MAIN ST."),
        roster_record("C3", "Bo Park", "123 Main St", status="EXPIRED"),
        roster_record("", "No License", "9 Elm St"),
        roster_record("C5", "No Address", ""),
    ]
    index = build_roster_index(records)

    key = "123 MAIN ST | DENVER | CO | 80202"
    assert list(index.by_address_key) == [key]
    assert [r.license_number for r in index.by_address_key[key]] == ["C1", "C2", "C3"]
    assert index.counts == {
        "rows": 5,
        "withAddressKey": 3,
        "skippedNoAddr": 1,
        "skippedNoTech": 1,
        "uniqAddressKey": 1,
        "uniqAddressKeyBase": 1,
    }
    assert index.skipped_samples["no_tech"]["Formatted Name"] == "No License"
    assert index.summary(key) == AnchorCounts(total=3, active=2, unique_names=3, unique_types=1)


def test_index_base_key_groups_units_together():
    records = [
        roster_record("C1", "Jane Doe", "500 Broadway Suite 101"),
        roster_record("C2", "Ann Lee", "500 Broadway #202"),
    ]
    index = build_roster_index(records)
    assert len(index.by_address_key) == 2
    base = index.by_address_key_base["500 BROADWAY | DENVER | CO | 80202"]
    assert sorted(r.license_number for r in base) == ["C1", "C2"]


def test_index_falls_back_to_first_and_last_name():
    record = roster_record("C1", "", "1 Elm St")
    record.update({"First Name": "Jane", "Last Name": "Doe"})
    index = build_roster_index([record])
    (rows,) = index.by_address_key.values()
    assert rows[0].full_name == "JANE DOE"


def test_index_schema_drift_names_the_field():
    records = [{"License Number": "C1", "Address Line 1": "1 Elm St", "Town": "Denver"}]
    with pytest.raises(SchemaDriftError) as exc:
        build_roster_index(records)
    assert exc.value.field == "city"
    assert "City" in exc.value.aliases


def test_index_round_trip():
    index = build_roster_index([
        roster_record("C1", "Jane Doe", "123 Main St Ste 4"),
        roster_record("C2", "Ann Lee", "77 Pearl St", zip_code="80203"),
    ])
    data = json.loads(json.dumps(index.to_dict({"path": "roster.csv"})))
    restored = RosterIndex.from_dict(data)
    assert restored.by_address_key == index.by_address_key
    assert restored.by_address_key_base == index.by_address_key_base
    assert restored.to_dict({"path": "roster.csv"}) == data


def test_norm_index_renormalizes_drifted_keys():
    row = LicenseRow(row_id="1", license_number="C1", address_key="12 MAIN ST. | DENVER | CO")
    index = RosterIndex({"12 MAIN ST. | DENVER | CO": [row]})
    assert index.by_address_key_norm["12 MAIN ST | DENVER | CO"] == [row]


def test_load_roster_csv(tmp_path):
    path = tmp_path / "roster.csv"
    path.write_text(
        "License Number,Formatted Name,Address Line 1,City,State,Mail Zip Code\n"
        "C1,Jane Doe,1 Elm St,Denver,CO,80202\n"
        "C2,Ann Lee,,Denver,CO,\n"
    )
    records, source = load_roster_records(path)
    assert len(records) == 2
    assert records[1]["Address Line 1"] == ""
    assert records[0]["Mail Zip Code"] == "80202"
    assert source["format"] == "csv"
    assert source["records"] == 2
    assert len(source["sha256"]) == 64


def test_load_roster_jsonl_skips_corrupt_lines(tmp_path):
    path = tmp_path / "roster.jsonl"
    path.write_text('{"License Number": "C1"}\nnot json\n\n{"License Number": "C2"}\n')
    records, _ = load_roster_records(path)
    assert [r["License Number"] for r in records] == ["C1", "C2"]


def test_load_roster_json_rows_wrapper(tmp_path):
    path = tmp_path / "roster.json"
    path.write_text(json.dumps({"rows": [{"License Number": "C1"}]}))
    records, source = load_roster_records(path)
    assert records == [{"License Number": "C1"}]
    assert source["format"] == "json"


def test_load_roster_missing_or_empty(tmp_path):
    with pytest.raises(MissingInputError) as exc:
        load_roster_records(tmp_path / "absent.csv")
    assert str(tmp_path / "absent.csv") in exc.value.tried_paths

    empty = tmp_path / "empty.json"
    empty.write_text("[]")
    with pytest.raises(MissingInputError):
        load_roster_records(empty)


@pytest.mark.parametrize("total,expected_bucket,expected_tier", [
    (0, "0", "0"),
    (1, "1", "1"),
    (2, "2-3", "2-3"),
    (3, "2-3", "2-3"),
    (4, "4-7", "4-6"),
    (6, "4-7", "4-6"),
    (7, "4-7", "7"),
    (8, "8-24", "8-12"),
    (12, "8-24", "8-12"),
    (13, "8-24", "13-24"),
    (24, "8-24", "13-24"),
    (25, "25+", "25+"),
    (300, "25+", "25+"),
])
def test_bucket_and_tier_boundaries(total, expected_bucket, expected_tier):
    assert bucket(total) == expected_bucket
    assert tier(total) == expected_tier


def test_top_counts_breaks_ties_by_name():
    ranked = top_counts(["b", "a", "c", "b", "a", "", "  "], 2)
    assert [(n.name, n.count) for n in ranked] == [("a", 2), ("b", 2)]


def test_build_anchor_aggregates_rows():
    rows = [
        LicenseRow(row_id="1", full_name="JANE DOE", license_type="COSMETOLOGIST", license_status="ACTIVE",
                   street="1 ELM ST", city="DENVER", state="CO", zip="80202"),
        LicenseRow(row_id="2", full_name="JANE DOE", license_type="NAIL TECHNICIAN", license_status="EXPIRED"),
        LicenseRow(row_id="3", full_name="ANN LEE", license_type="COSMETOLOGIST", license_status="ACTIVE"),
    ]
    anchor = build_anchor("1 ELM ST | DENVER | CO | 80202", rows)
    assert anchor.counts == AnchorCounts(total=3, active=2, unique_names=2, unique_types=2)
    assert anchor.top_names[0].name == "JANE DOE"
    assert anchor.license_types == ["COSMETOLOGIST", "NAIL TECHNICIAN"]
    assert anchor.status_top[0].name == "ACTIVE"
    assert anchor.address.street == "1 ELM ST"
    assert (anchor.bucket, anchor.tier) == ("2-3", "2-3")


def test_rollup_sorted_by_total_then_key():
    rows = lambda n: [LicenseRow(row_id=str(i), license_number=f"L{i}") for i in range(n)]
    index = RosterIndex({"C | X | CO": rows(2), "A | X | CO": rows(2), "B | X | CO": rows(5)})
    rollup = build_rollup(index, top_n=2)

    assert [a["addressKey"] for a in rollup["anchors"]] == ["B | X | CO", "A | X | CO", "C | X | CO"]
    assert rollup["counts"]["anchors"] == 3
    assert rollup["counts"]["dist"]["2-3"] == 2
    assert rollup["counts"]["dist"]["4-7"] == 1
    assert rollup["counts"]["topN"] == 2

    top = top_anchors(rollup, 2)
    assert top["counts"] == {"anchors": 2, "minTotal": 2, "maxTotal": 5}


def test_anchor_round_trip():
    index = build_roster_index([roster_record("C1", "Jane Doe", "1 Elm St")])
    rollup = json.loads(json.dumps(build_rollup(index)))
    anchors = load_anchors(rollup)
    assert isinstance(anchors[0], RosterAnchor)
    assert [a.to_dict() for a in anchors] == rollup["anchors"]


def test_summarize_rows_empty():
    assert summarize_rows([]) == AnchorCounts()


def test_audit_fields_counts_populated_raw_fields():
    records = [
        roster_record("C1", "Jane Doe", "123 Main St"),
        {**roster_record("C2", "Ann Lee", "9 Elm St"), "License Type": ""},
        roster_record("C3", "Bo Park", "77 Oak Ave"),
    ]
    audit = audit_fields(build_roster_index(records), sample=2)
    by_field = {row["field"]: row["count"] for row in audit}
    assert by_field["License Number"] == 2
    assert by_field["License Type"] == 1
    assert len(audit) == len(records[0])
