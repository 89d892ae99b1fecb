import pytest
from unittest.mock import AsyncMock, MagicMock

import main
from techindex import pipeline
from techindex.errors import ConcurrentWriteError, MissingInputError
from techindex.matchers.tech_entities import load_tech
from techindex.storage import ArtifactStore

KEY = "123 MAIN ST | DENVER | CO | 80202"

ROSTER_CSV = (
    "License Number,Formatted Name,Address Line 1,City,State,Mail Zip Code,License Status Description,License Type\n"
    "C1,Jane Doe,123 Main Street,Denver,CO,80202,ACTIVE,Cosmetologist\n"
    "C2,Jane Doe,123 Main St.,Denver,CO,80202-0042,EXPIRED,Cosmetologist\n"
    "C3,Ann Lee,123 MAIN ST,denver,co,80202,ACTIVE,Nail Technician\n"
    ",Nobody,9 Elm St,Denver,CO,80202,ACTIVE,Cosmetologist\n"
)


@pytest.fixture
def roster_path(tmp_path):
    path = tmp_path / "roster.csv"
    path.write_text(ROSTER_CSV)
    return str(path)


@pytest.fixture
def store(tmp_path):
    return pipeline.open_store(str(tmp_path / "data"))


def lookup_client():
    client = MagicMock()
    client.lookup = AsyncMock(return_value={
        "topPlaceId": "p1",
        "detailsStatus": "OK",
        "details": {"response": {"status": "OK", "result": {
            "name": "Main Street Beauty",
            "website": "https://main.example",
            "formatted_phone_number": "(303) 555-0100",
            "types": ["beauty_salon", "point_of_interest"],
        }}},
    })
    return client


@pytest.mark.asyncio
async def test_three_rows_end_to_end(store, roster_path):
    """
    Three license rows at one normalized address (2 ACTIVE, 1 EXPIRED, 2 names)
    flow through every stage into one tech entity.
    """
    index_counts = pipeline.run_index(store, roster_path=roster_path)
    assert index_counts["withAddressKey"] == 3
    assert index_counts["uniqAddressKey"] == 1
    assert index_counts["skippedNoTech"] == 1

    audit = pipeline.run_audit(store)
    assert audit["fields"] == 8

    pipeline.run_rollup(store)
    (anchor,) = store.read("address_rollup")["anchors"]
    assert anchor["addressKey"] == KEY
    assert anchor["counts"] == {"total": 3, "active": 2, "uniqueNames": 2, "uniqueTypes": 2}

    density_counts = pipeline.run_density(store, min_total=2, max_total=7, min_active=2)
    assert density_counts == {"inRange": 1, "pass": 1, "out": 1}
    (row,) = store.read("density_active")["rows"]
    assert row["score"] == 2089.6667
    assert store.read("density_active")["knobs"]["MIN_ACTIVE"] == 2

    pipeline.run_org_signals(store, roster_path=roster_path)
    facility_counts = pipeline.run_facilities(store, roster_path=roster_path, registrations_path=None, metro_only=True)
    assert facility_counts["facilities"] == 1

    pipeline.run_merge_org(store)
    (facility,) = store.read("facilities")["rows"]
    assert facility["techCountAtAddress"] == 3
    assert facility["activeShare"] == 0.6667
    assert facility["category"] == "indie-salon"
    assert facility["needsConfirm"] is False

    assert pipeline.run_seed_overrides(store)["sheets"] == 0
    assert pipeline.run_queue(store)["queued"] == 1

    client = lookup_client()
    pull_counts = await pipeline.run_pull(store, client=client)
    assert pull_counts["pulled"] == 1
    client.lookup.assert_awaited_once_with("123 MAIN ST DENVER CO 80202")

    candidate_counts = pipeline.run_candidates(store)
    assert candidate_counts["rows"] == 1
    assert candidate_counts["skippedFacilityDuplicates"] == 1
    (candidate,) = store.read("places_candidates")["rows"]
    assert candidate["matchScore"] == 85

    assert pipeline.run_match(store) == {"matched": 1, "needsReview": 0}
    (matched,) = store.read("places_matched")["rows"]
    assert matched["placeType"] == "salon"
    assert matched["matched"] is True

    tech_counts = pipeline.run_tech(store)
    assert tech_counts["tech"] == 1
    assert tech_counts["joined"] == 1
    assert tech_counts["missing"] == 0
    (tech,) = store.read("tech_index")["tech"]
    (entity,) = load_tech(store.read("tech_index"))
    assert entity.roster_summary.active == 2
    assert tech["rosterJoin"] == {"mode": "exact"}
    assert tech["rosterSummary"]["total"] == 3
    assert tech["displayName"] == "Main Street Beauty"
    assert tech["segment"] == "indie_tech"
    assert tech["segmentConfidence"] == 0.6333


@pytest.mark.asyncio
async def test_rerunning_pull_and_merge_is_a_no_op(store, roster_path):
    pipeline.run_index(store, roster_path=roster_path)
    pipeline.run_org_signals(store, roster_path=roster_path)
    pipeline.run_facilities(store, roster_path=roster_path, metro_only=True)
    pipeline.run_merge_org(store)
    first = store.read("facilities")["rows"]
    pipeline.run_merge_org(store)
    assert store.read("facilities")["rows"] == first
    assert len(store.versions("facilities")) == 3

    pipeline.run_queue(store)
    client = lookup_client()
    await pipeline.run_pull(store, client=client)
    again = await pipeline.run_pull(store, client=client)
    assert again["skippedSeen"] == 1
    assert client.lookup.await_count == 1


def test_missing_upstream_artifact(store):
    with pytest.raises(MissingInputError) as exc:
        pipeline.run_rollup(store)
    assert exc.value.artifact == "roster_index"
    assert any(p.endswith("dora_roster_index.json") for p in exc.value.tried_paths)


def test_unconfigured_roster_path(store):
    with pytest.raises(MissingInputError) as exc:
        pipeline.run_index(store, roster_path=None)
    assert exc.value.tried_paths == ["$TECHINDEX_ROSTER_PATH"]


def test_concurrent_merge_is_rejected(store, roster_path, tmp_path):
    pipeline.run_index(store, roster_path=roster_path)
    pipeline.run_org_signals(store, roster_path=roster_path)
    pipeline.run_facilities(store, roster_path=roster_path, metro_only=True)
    before = store.read("facilities")

    other_run = ArtifactStore(store.root)
    with other_run.lock("facilities"):
        with pytest.raises(ConcurrentWriteError):
            pipeline.run_merge_org(store)
    assert store.read("facilities") == before


def test_id_migration(store, roster_path):
    counts = pipeline.run_migrate_ids(store, roster_path=roster_path)
    assert counts["legacyIds"] >= 1
    mapping = store.read("address_id_migration")["map"]
    assert all(v.startswith("addr_") and len(v) == 21 for v in mapping.values())


@pytest.mark.asyncio
async def test_cli_reports_missing_input(tmp_path):
    code = await main.main(["rollup", "--data-dir", str(tmp_path / "empty")])
    assert code == 1


@pytest.mark.asyncio
async def test_cli_all_uses_the_given_roster(tmp_path, roster_path, monkeypatch):
    monkeypatch.setattr(pipeline, "PlacesClient", lookup_client)
    data_dir = str(tmp_path / "data")

    code = await main.main(["all", "--data-dir", data_dir, "--roster", roster_path])

    assert code == 0
    store = pipeline.open_store(data_dir)
    assert store.read("roster_index")["counts"]["uniqAddressKey"] == 1
    assert store.read("places_matched")["counts"] == {"matched": 1, "needsReview": 0}
    (tech,) = store.read("tech_index")["tech"]
    assert tech["rosterJoin"] == {"mode": "exact"}


@pytest.mark.asyncio
async def test_run_all_without_roster_fails_fast(store):
    with pytest.raises(MissingInputError):
        await pipeline.run_all(store, client=lookup_client(), roster_path=None)
