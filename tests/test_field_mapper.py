"""
Tests for CSV header -> business attribute inference.
"""

import pytest

from bizdir.domain.imports.field_mapper import (
    CANONICAL_FIELDS,
    apply_field_mapping,
    infer_field_mapping,
    match_synonym,
    normalize_header,
)


class TestInferFieldMapping:
    """Exact, synonym and override mapping."""

    def test_exact_headers_map_without_rationale(self):
        result = infer_field_mapping(["Name", " Email ", "PHONE", "abn_status"])

        assert result.mapping == {
            "Name": "name",
            " Email ": "email",
            "PHONE": "phone",
            "abn_status": "abn_status",
        }
        assert result.rationales == []
        assert result.unmapped_headers == []

    @pytest.mark.parametrize("header,expected", [
        ("Business Name", "name"),
        ("Company", "name"),
        ("Telephone", "phone"),
        ("Mobile", "phone"),
        ("E-mail Address", "email"),
        ("URL", "website"),
        ("Homepage", "website"),
        ("Street Address", "address"),
        ("City", "suburb"),
        ("Industry", "category"),
        ("ABN_Number", "abn"),
    ])
    def test_synonyms(self, header, expected):
        result = infer_field_mapping([header])
        assert result.mapping == {header: expected}

    def test_similarity_rationale_is_recorded(self):
        result = infer_field_mapping(["Business Name"])
        assert result.rationales == ['Mapped "Business Name" to "name" based on similarity']

    def test_first_synonym_in_table_order_wins(self):
        # "company" (name) and "type" (category) both appear; name comes first in the table
        result = infer_field_mapping(["Company Type"])
        assert result.mapping == {"Company Type": "name"}

    def test_short_headers_do_not_match_inside_synonyms(self):
        result = infer_field_mapping(["co", "id"])
        assert result.mapping == {}
        assert result.unmapped_headers == ["co", "id"]

    def test_unmapped_headers_are_listed_in_file_order(self):
        result = infer_field_mapping(["Name", "Notes", "Favourite Colour"])
        assert result.unmapped_headers == ["Notes", "Favourite Colour"]

    def test_overrides_take_precedence(self):
        result = infer_field_mapping(["Company", "Mobile"], overrides={"Mobile": "bio"})

        assert result.mapping == {"Company": "name", "Mobile": "bio"}
        assert 'Mapped "Mobile" to "bio" by operator override' in result.rationales

    def test_override_can_map_an_unrecognised_header(self):
        result = infer_field_mapping(["Trading As"], overrides={"Trading As": "name"})
        assert result.mapping == {"Trading As": "name"}
        assert result.unmapped_headers == []

    def test_override_to_unknown_attribute_is_rejected(self):
        with pytest.raises(ValueError):
            infer_field_mapping(["Name"], overrides={"Name": "owner"})

    def test_custom_synonym_table(self):
        synonyms = (("bio", ("about",)),)
        result = infer_field_mapping(["About Us", "Company"], synonyms=synonyms)
        assert result.mapping == {"About Us": "bio"}

    def test_mapped_fields_are_unique(self):
        result = infer_field_mapping(["Name", "Company"])
        assert result.mapped_fields == ["name"]


def test_normalize_header():
    assert normalize_header("  Business Name ") == "business name"
    assert normalize_header(None) == ""


def test_match_synonym_returns_none_for_blank_header():
    assert match_synonym("") is None


def test_canonical_fields_cover_directory_attributes():
    assert set(CANONICAL_FIELDS) == {
        "name", "email", "phone", "website", "address", "suburb", "postcode",
        "category", "bio", "abn", "abn_status", "source",
    }


class TestApplyFieldMapping:
    def test_trims_and_drops_empty_cells(self):
        headers = ["Name", "Email", "Notes"]
        mapping = {"Name": "name", "Email": "email"}
        record = apply_field_mapping(headers, ["  Joe's Plumbing ", "   ", "ignored"], mapping)
        assert record == {"name": "Joe's Plumbing"}

    def test_short_rows_lack_trailing_attributes(self):
        headers = ["Name", "Phone", "Suburb"]
        mapping = {"Name": "name", "Phone": "phone", "Suburb": "suburb"}
        assert apply_field_mapping(headers, ["Acme", "0412345678"], mapping) == {
            "name": "Acme",
            "phone": "0412345678",
        }

    def test_first_non_empty_column_wins_for_shared_attribute(self):
        headers = ["Name", "Company"]
        mapping = {"Name": "name", "Company": "name"}
        assert apply_field_mapping(headers, ["", "Acme"], mapping) == {"name": "Acme"}
        assert apply_field_mapping(headers, ["First", "Second"], mapping) == {"name": "First"}
