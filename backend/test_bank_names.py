import json

import pytest

from services.bank_names import (
    BANK_ALIASES, UNKNOWN_BANK, _ALIAS_FILE, get_bank_identifier, normalize_bank_name,
)


def _alias_table():
    with open(_ALIAS_FILE, encoding="utf-8") as f:
        return json.load(f)


def test_every_alias_maps_to_its_canonical_name():
    for canonical, variants in _alias_table().items():
        assert normalize_bank_name(canonical) == canonical
        for variant in variants:
            assert normalize_bank_name(variant) == canonical, variant


def test_identifier_is_stable_and_idempotent():
    for canonical in _alias_table():
        identifier = get_bank_identifier(canonical)
        assert identifier == get_bank_identifier(canonical)
        assert all(c.isalnum() or c == "_" for c in identifier)
        assert not identifier.startswith("_") and not identifier.endswith("_")
        assert "__" not in identifier


@pytest.mark.parametrize("raw", ["MCB", "mcb bank", "  Maduro and Curiel's Bank ", "MADURO & CURIELS BANK"])
def test_punctuation_and_case_are_ignored(raw):
    assert normalize_bank_name(raw) == "Maduro & Curiel's Bank"


def test_unknown_bank_is_title_cased():
    assert normalize_bank_name("first NATIONAL trust") == "First National Trust"


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_empty_name_is_unknown_bank(raw):
    assert normalize_bank_name(raw) == UNKNOWN_BANK


def test_identifier_examples():
    assert get_bank_identifier("mcb") == "maduro_curiel_s_bank"
    assert get_bank_identifier("Royal Bank of Canada") == "rbc_royal_bank"
    assert get_bank_identifier("") == "unknown_bank"
    assert get_bank_identifier("!!!") == "unknown_bank"


def test_alias_table_is_read_only():
    with pytest.raises(TypeError):
        BANK_ALIASES["new bank"] = "New Bank"
