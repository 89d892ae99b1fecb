import pytest

from techindex.models import AnchorCounts, NameCount, RosterAnchor
from techindex.roster.density import density_artifacts, density_score, filter_density, passes_gate, to_density_row


def anchor(key, total, active, unique_names=1):
    return RosterAnchor(
        address_key=key,
        counts=AnchorCounts(total=total, active=active, unique_names=unique_names, unique_types=1),
        top_names=[NameCount(name=f"{key} NAME", count=total)],
    )


@pytest.mark.parametrize("counts,expected", [
    # tiny-total exception: one active plus a second distinct name
    (AnchorCounts(total=3, active=1, unique_names=2), True),
    (AnchorCounts(total=3, active=1, unique_names=1), False),
    # hard gate
    (AnchorCounts(total=5, active=2, unique_names=1), True),
    (AnchorCounts(total=5, active=1, unique_names=5), False),
    (AnchorCounts(total=0, active=0, unique_names=0), False),
])
def test_gate(counts, expected):
    assert passes_gate(counts, min_active=2, soft_min_ratio=0.0) is expected


def test_soft_ratio_applies_to_both_gates():
    assert not passes_gate(AnchorCounts(total=7, active=2, unique_names=2), min_active=2, soft_min_ratio=0.5)
    assert not passes_gate(AnchorCounts(total=3, active=1, unique_names=2), min_active=2, soft_min_ratio=0.5)
    assert passes_gate(AnchorCounts(total=4, active=2, unique_names=2), min_active=2, soft_min_ratio=0.5)


def test_score_is_deterministic():
    counts = AnchorCounts(total=5, active=3, unique_names=2)
    assert round(density_score(counts), 4) == 3085.0
    assert to_density_row(anchor("A", 5, 3, 2)).score == 3085.0


def test_stored_values_are_rounded_to_four_places():
    row = to_density_row(anchor("A", 3, 2, 2))
    assert row.active_ratio == 0.6667
    assert row.score == 2089.6667
    assert row.tier == "2-3"
    assert row.top_name == "A NAME"


def test_filter_keeps_closed_range_and_sort_chain():
    anchors = [
        anchor("OUT-LOW", 1, 1),
        anchor("OUT-HIGH", 8, 8),
        anchor("B", 4, 2, 2),      # ratio 0.5
        anchor("A", 2, 2, 2),      # ratio 1.0
        anchor("C", 7, 3, 1),
        anchor("D", 6, 3, 3),      # ratio 0.5
        anchor("E", 6, 3, 1),      # same as D but fewer names
        anchor("F", 7, 0, 7),      # in range, fails gate
    ]
    result = filter_density(anchors, min_total=2, max_total=7, min_active=2, soft_min_ratio=0.0, max_out=800)

    assert result.counts == {"inRange": 6, "pass": 5, "out": 5}
    # active desc, ratio desc, uniqueNames desc, total desc
    assert [r.address_key for r in result.rows] == ["D", "E", "C", "A", "B"]
    assert result.knobs["MIN_ACTIVE"] == 2
    assert result.knobs["SOFT_MIN_RATIO"] == 0.0
    assert result.knobs["MAX_OUT"] == 800


def test_truncation_happens_after_sorting():
    anchors = [anchor("LOW", 5, 2), anchor("HIGH", 5, 4), anchor("MID", 5, 3)]
    result = filter_density(anchors, max_out=1)
    assert [r.address_key for r in result.rows] == ["HIGH"]
    assert result.counts["pass"] == 3
    assert result.counts["out"] == 1


def test_artifacts_shape():
    result = filter_density([anchor("A", 3, 2, 2), anchor("B", 3, 0, 1)])
    artifacts = density_artifacts(result)
    assert set(artifacts) == {"density_all", "density_active"}
    assert artifacts["density_all"]["counts"] == {"rows": 2}
    active = artifacts["density_active"]
    assert set(active["knobs"]) >= {"MIN_ACTIVE", "SOFT_MIN_RATIO", "MAX_OUT"}
    assert [r["addressKey"] for r in active["rows"]] == ["A"]
