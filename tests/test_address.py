import pytest

from techindex.address import (
    address_join_key,
    build_id_migration,
    build_key,
    canonicalize_key,
    compute_address_id,
    expand_street_abbrev,
    key_forms,
    legacy_address_id,
    normalize_token,
    normalize_zip,
    query_from_key,
    slugify_address,
    split_address_key,
    strip_unit_tokens,
)
from techindex.models import Address, AddressParts

SUITE_PARTS = AddressParts(
    street1="123 Main Street",
    street2="Suite 200",
    city="Denver",
    state="co",
    zip="80202-1234",
)


def test_normalize_token_is_idempotent_across_code_points():
    unstable = []
    for cp in range(0x20, 0x30000):
        if 0xD800 <= cp <= 0xDFFF:
            continue
        once = normalize_token(chr(cp) + " Main St")
        if normalize_token(once) != once:
            unstable.append(hex(cp))
    assert unstable == []


@pytest.mark.parametrize("raw", [
    "  123  Main St., Apt. 4 ",
    "O’Brien’s “Corner”",
    "ΐ Main St",
    "ᵃ Street",
    "e'\u0301 Ave",
    "",
])
def test_normalize_token_is_idempotent(raw):
    once = normalize_token(raw)
    assert normalize_token(once) == once


def test_normalize_token_strips_noise():
    assert normalize_token("  123  Main St., Apt. 4 ") == "123 MAIN ST APT 4"
    assert normalize_token("O’Brien's") == "OBRIENS"
    assert normalize_token(None) == ""


def test_delimiter_inside_a_field_cannot_split_the_key():
    parts = AddressParts(street1="100 Main St | Ste 2", city="Denver|", state="CO", zip="80202")
    key = build_key(parts)
    assert key == "100 MAIN ST STE 2 | DENVER | CO | 80202"
    assert canonicalize_key(key) == key
    assert key_forms(parts).base == "100 MAIN ST | DENVER | CO | 80202"


def test_expand_street_abbrev():
    assert expand_street_abbrev("123 North Main Street Suite 200") == "123 N MAIN ST STE 200"
    assert expand_street_abbrev("9 West Colfax Avenue # 12") == "9 W COLFAX AVE #12"


@pytest.mark.parametrize("street,expected", [
    ("123 MAIN ST STE 200", "123 MAIN ST"),
    ("123 MAIN ST #4", "123 MAIN ST"),
    ("123 MAIN ST # 4", "123 MAIN ST"),
    ("100 ELM ST UNIT B STE 3", "100 ELM ST"),
    ("100 ELM ST", "100 ELM ST"),
])
def test_strip_unit_tokens(street, expected):
    assert strip_unit_tokens(street) == expected


def test_normalize_zip_keeps_first_five_digits():
    assert normalize_zip("80202-1234") == "80202"
    assert normalize_zip(" 8020 ") == "8020"
    assert normalize_zip(None) == ""


def test_build_key_canonical_form():
    assert build_key(SUITE_PARTS) == "123 MAIN ST STE 200 | DENVER | CO | 80202"


@pytest.mark.parametrize("parts", [
    AddressParts(street1="", city="Denver", state="CO"),
    AddressParts(street1="123 Main St", city="", state="CO"),
    AddressParts(street1="123 Main St", city="Denver", state=""),
    AddressParts(street1=" . , ", city="Denver", state="CO"),
])
def test_build_key_returns_empty_when_unkeyable(parts):
    assert build_key(parts) == ""


def test_build_key_omits_missing_zip():
    assert build_key(AddressParts("1 Elm St", "", "Golden", "CO", "")) == "1 ELM ST | GOLDEN | CO"


def test_keying_twice_yields_identical_key_and_id():
    """Re-running the keyer on the same raw row gives the same key and id."""
    assert build_key(SUITE_PARTS) == build_key(SUITE_PARTS)
    assert compute_address_id(SUITE_PARTS) == compute_address_id(SUITE_PARTS)


def test_key_forms():
    forms = key_forms(SUITE_PARTS)
    assert forms.exact == "123 MAIN STREET SUITE 200 | DENVER | CO | 80202"
    assert forms.norm == "123 MAIN ST STE 200 | DENVER | CO | 80202"
    assert forms.base == "123 MAIN ST | DENVER | CO | 80202"


def test_key_forms_accepts_a_key_string():
    assert key_forms("123 Main Street Suite 200 | Denver | CO | 80202").norm == build_key(SUITE_PARTS)


def test_canonicalize_five_field_key():
    legacy = "123 Main Street | Suite 200 | Denver | CO | 80202"
    assert canonicalize_key(legacy) == build_key(SUITE_PARTS)


def test_canonicalize_is_stable_on_canonical_keys():
    key = build_key(SUITE_PARTS)
    assert canonicalize_key(key) == key


def test_split_address_key_variants():
    assert split_address_key("1 ELM ST | GOLDEN | CO") == AddressParts("1 ELM ST", "", "GOLDEN", "CO", "")
    assert split_address_key("1 ELM ST | GOLDEN | CO | 80401") == AddressParts("1 ELM ST", "", "GOLDEN", "CO", "80401")
    # address1 | address2 | city | state, without zip
    assert split_address_key("1 ELM ST | STE 4 | GOLDEN | CO") == AddressParts("1 ELM ST", "STE 4", "GOLDEN", "CO", "")


def test_compute_address_id_matches_equivalent_spellings():
    a = compute_address_id(AddressParts("123 Main Street", "", "Denver", "CO", "80202"))
    b = compute_address_id(AddressParts("123 MAIN ST.", "", "denver", "co", "80202-0001"))
    assert a == b
    assert a.id.startswith("addr_")
    assert len(a.id) == len("addr_") + 16
    assert a.normalized_key == "123 MAIN ST|DENVER|CO|80202"


def test_legacy_ids_migrate_to_canonical_ids():
    parts = [
        AddressParts("123 Main Street", "", "Denver", "CO", "80202"),
        AddressParts("", "", "Denver", "CO", "80202"),
    ]
    legacy = legacy_address_id("123 Main Street", "Denver", "CO", "80202")
    assert len(legacy) == len("addr_") + 10

    mapping = build_id_migration(parts)
    assert mapping == {legacy: compute_address_id(parts[0]).id}


def test_address_join_key_ignores_spacing_around_pipes():
    assert address_join_key("123 Main St | Denver | CO") == address_join_key("123 MAIN ST|DENVER|CO")
    assert address_join_key("1 O’Neil Way | Denver | CO") == "1 O NEIL WAY|DENVER|CO"


def test_query_and_slug():
    key = "123 MAIN ST | DENVER | CO | 80202"
    assert query_from_key(key) == "123 MAIN ST DENVER CO 80202"
    assert slugify_address(Address("123 MAIN ST", "DENVER", "CO", "80202")) == "123-main-st-denver-co-80202"
