"""Tests for the field mapper and code tables."""

import json

import pytest

from interop_src.composer import MessageComposer
from interop_src.config import Config
from interop_src.errors import MappingError, MappingErrorReason
from interop_src.vocab import CodeTable, CodeTriple, FieldMapper, normalize_token


class TestNormalizeToken:
    """Tests for domain token normalization."""

    def test_lowercases_and_joins_words(self):
        assert normalize_token("Black or African-American ") == "black_or_african_american"

    def test_collapses_separators(self):
        assert normalize_token("  Not / Hispanic  ") == "not_hispanic"


class TestMapCode:
    """Tests for FieldMapper.map_code."""

    def test_maps_race(self, mapper):
        result = mapper.map_code("white", "race")
        assert result == CodeTriple("2106-3", "White", "CDCREC", "2.16.840.1.113883.6.238")

    def test_alias_resolves_to_canonical_entry(self, mapper):
        assert mapper.map_code("African American", "race").code == "2054-5"
        assert mapper.map_code("F", "administrative_gender").code == "F"

    def test_unknown_value_is_returned_not_raised(self, mapper):
        result = mapper.map_code("martian", "race")
        assert isinstance(result, MappingError)
        assert result.reason == MappingErrorReason.UNKNOWN_VALUE
        assert result.value == "martian"
        assert result.vocabulary == "race"

    def test_blank_value_is_unknown(self, mapper):
        result = mapper.map_code("  ", "ethnicity")
        assert isinstance(result, MappingError)
        assert result.reason == MappingErrorReason.UNKNOWN_VALUE

    def test_unknown_vocabulary(self, mapper):
        result = mapper.map_code("white", "planet")
        assert isinstance(result, MappingError)
        assert result.reason == MappingErrorReason.UNKNOWN_VOCABULARY

    def test_unknown_race_substitutes_nullflavor(self, mapper):
        """An unmapped race becomes UNK^Unknown^NULLFL only when substitution is asked for."""
        assert isinstance(mapper.map_code("martian", "race"), MappingError)
        substitute = mapper.map_or_unknown("martian", "race")
        assert substitute.to_hl7() == "UNK^Unknown^NULLFL"

    def test_map_or_unknown_still_raises_for_unknown_vocabulary(self, mapper):
        with pytest.raises(MappingError):
            mapper.map_or_unknown("white", "planet")

    def test_require_adds_segment_and_field(self, mapper):
        with pytest.raises(MappingError) as exc_info:
            mapper.require("martian", "race", segment="PID", field="PID-10")
        assert exc_info.value.segment == "PID"
        assert exc_info.value.field == "PID-10"
        assert "PID.PID-10" in str(exc_info.value)

    def test_code_system_lookup(self, mapper):
        system = mapper.code_system("ICD-10-CM")
        assert system.code == "I10"
        assert system.system_oid == "2.16.840.1.113883.6.90"

    def test_coded_wraps_standard_code(self, mapper):
        triple = mapper.coded("A37", "Whooping cough", "icd10")
        assert triple.to_hl7() == "A37^Whooping cough^I10"


class TestRoundTrip:
    """Every table entry maps back to its token, or its vocabulary is flagged lossy."""

    def test_every_entry_reverses(self, mapper):
        for name, vocabulary in mapper.table.vocabularies.items():
            for token in vocabulary.entries:
                triple = mapper.map_code(token, name)
                assert isinstance(triple, CodeTriple), f"{name}:{token}"
                tokens = mapper.reverse(triple.code, name)
                assert token in tokens
                if len(tokens) > 1:
                    assert mapper.is_lossy(name), f"{name} maps {tokens} to {triple.code}"

    def test_race_is_lossless(self, mapper):
        assert not mapper.is_lossy("race")
        assert mapper.reverse("2106-3", "race") == ["white"]

    def test_gender_is_lossy(self, mapper):
        assert mapper.is_lossy("administrative_gender")
        assert mapper.reverse("O", "administrative_gender") == ["other", "nonbinary"]


class TestCodeTable:
    """Tests for loading versioned code tables."""

    @pytest.fixture
    def table_data(self):
        return {
            "version": "test-1",
            "vocabularies": {
                "race": {
                    "system": "CDCREC",
                    "oid": "2.16.840.1.113883.6.238",
                    "unknown": {"code": "UNK", "display": "Unknown", "system": "NULLFL"},
                    "entries": {"martian": ["9999-9", "Martian"]},
                    "aliases": {"mars": "martian"},
                },
            },
        }

    def test_default_table_is_versioned(self):
        table = CodeTable.default()
        assert table.version
        assert "race" in table
        assert "cvx" in table

    def test_from_file(self, tmp_path, table_data):
        path = tmp_path / "codes.json"
        path.write_text(json.dumps(table_data))

        mapper = FieldMapper(CodeTable.from_file(path))

        assert mapper.version == "test-1"
        assert mapper.map_code("Mars", "race").code == "9999-9"
        assert isinstance(mapper.map_code("white", "race"), MappingError)

    def test_configured_table_path_is_used_by_default(self, tmp_path, table_data, monkeypatch):
        path = tmp_path / "codes.json"
        path.write_text(json.dumps(table_data))
        monkeypatch.setattr(Config, "CODE_TABLE_PATH", str(path))

        assert FieldMapper().version == "test-1"
        assert MessageComposer().mapper.map_code("mars", "race").code == "9999-9"

    def test_packaged_table_when_path_unset(self, monkeypatch):
        monkeypatch.setattr(Config, "CODE_TABLE_PATH", None)
        assert FieldMapper().version == CodeTable.default().version

    def test_missing_version_rejected(self, table_data):
        del table_data["version"]
        with pytest.raises(ValueError, match="no version"):
            CodeTable.from_dict(table_data)

    def test_missing_unknown_code_rejected(self, table_data):
        del table_data["vocabularies"]["race"]["unknown"]
        with pytest.raises(ValueError, match="no unknown code"):
            CodeTable.from_dict(table_data)

    def test_dangling_alias_rejected(self, table_data):
        table_data["vocabularies"]["race"]["aliases"]["venus"] = "venusian"
        with pytest.raises(ValueError, match="unknown entry"):
            CodeTable.from_dict(table_data)
