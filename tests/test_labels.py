# ============================================================================
# Leafcare Disease Classifier - Label & Remedy Tests
# ============================================================================
# Purpose: Verify numeric label ordering and the never-failing fallbacks
# ============================================================================

import json

import pytest

from leafcare_server.engine.labels import (
    DEFAULT_PESTICIDE,
    DEFAULT_SOLUTION,
    UNKNOWN_LABEL,
    LabelMap,
    RemedyCatalog,
)
from leafcare_server.errors import ManifestError


class TestLabelMap:
    """Index -> label ordering."""

    def test_numeric_sort_not_declaration_order(self):
        labels = LabelMap.build({"2": "C", "0": "A", "1": "B"})
        assert labels.as_list() == ["A", "B", "C"]

    def test_numeric_not_lexicographic(self):
        mapping = {str(i): f"class_{i}" for i in range(12)}
        labels = LabelMap.build(mapping)
        assert labels.resolve(10) == "class_10"
        assert labels.resolve(2) == "class_2"

    def test_integer_keys_accepted(self):
        assert LabelMap.build({1: "B", 0: "A"}).as_list() == ["A", "B"]

    @pytest.mark.parametrize("index", [4, 99, -1])
    def test_out_of_range_resolves_unknown(self, index):
        labels = LabelMap.build({"0": "A", "1": "B", "2": "C", "3": "D"})
        assert labels.resolve(index) == UNKNOWN_LABEL
        assert index not in labels

    def test_empty_label_resolves_unknown(self):
        assert LabelMap(["", "B"]).resolve(0) == UNKNOWN_LABEL

    def test_non_integer_key(self):
        with pytest.raises(ManifestError, match="not an integer"):
            LabelMap.build({"zero": "A"})

    def test_duplicate_after_coercion(self):
        with pytest.raises(ManifestError, match="more than once"):
            LabelMap.build({"1": "A", "01": "B", "0": "C"})

    def test_gap_in_indices(self):
        with pytest.raises(ManifestError, match="contiguous"):
            LabelMap.build({"0": "A", "2": "C"})

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "class_indices.json"
        path.write_text(json.dumps({"1": "Potato___healthy", "0": "Potato___Early_blight"}))
        labels = LabelMap.load(path)
        assert list(labels) == ["Potato___Early_blight", "Potato___healthy"]
        assert len(labels) == 2

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            LabelMap.load(tmp_path / "class_indices.json")

    def test_load_rejects_non_string_labels(self, tmp_path):
        path = tmp_path / "class_indices.json"
        path.write_text(json.dumps({"0": ["A"]}))
        with pytest.raises(ManifestError, match="failed validation"):
            LabelMap.load(path)


class TestRemedyCatalog:
    """Label -> remedy with a fixed default."""

    def test_lookup_hit(self):
        catalog = RemedyCatalog.from_mapping({"Rust": {"solution": "Prune.", "pesticide": "Sulfur"}})
        entry = catalog.lookup("Rust")
        assert (entry.solution, entry.pesticide) == ("Prune.", "Sulfur")

    def test_missing_label_uses_default(self):
        entry = RemedyCatalog.from_mapping({"Rust": {"solution": "Prune.", "pesticide": "Sulfur"}}).lookup("Scab")
        assert entry.solution == DEFAULT_SOLUTION == "Use proper fertilizers and care."
        assert entry.pesticide == DEFAULT_PESTICIDE == "Apply recommended pesticide."

    def test_blank_fields_fall_back_per_field(self):
        catalog = RemedyCatalog.from_mapping({"Rust": {"solution": "  ", "pesticide": "Sulfur"}, "Scab": {}})
        assert catalog.lookup("Rust").solution == DEFAULT_SOLUTION
        assert catalog.lookup("Rust").pesticide == "Sulfur"
        assert catalog.lookup("Scab").pesticide == DEFAULT_PESTICIDE

    def test_absent_file_is_empty_catalog(self, tmp_path):
        catalog = RemedyCatalog.load(tmp_path / "diseaseInfo.json")
        assert len(catalog) == 0
        assert catalog.lookup("Anything").solution == DEFAULT_SOLUTION

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "diseaseInfo.json"
        path.write_text(json.dumps({"Rust": {"solution": "Prune.", "pesticide": "Sulfur", "extra": 1}}))
        catalog = RemedyCatalog.load(path)
        assert "Rust" in catalog
        assert catalog.lookup("Rust").pesticide == "Sulfur"

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "diseaseInfo.json"
        path.write_text(json.dumps({"Rust": "spray it"}))
        with pytest.raises(ManifestError):
            RemedyCatalog.load(path)
