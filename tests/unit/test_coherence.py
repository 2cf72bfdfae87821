"""Unit tests for coherence and primary-field checks."""

from storybible.validators.coherence import find_missing_primary_fields, validate_coherence


class TestValidateCoherence:
    def test_blank_and_absent_fields(self):
        report = validate_coherence({"a": "x", "b": "  "}, ["a", "b", "c"])

        assert report.valid is False
        assert report.missing == ["b", "c"]
        assert report.message == "Missing coherence fields: b, c"

    def test_all_present(self):
        report = validate_coherence({"a": "x"}, ["a"])

        assert report.valid is True
        assert report.missing == []
        assert report.message == "All coherence checks passed"

    def test_missing_block(self):
        report = validate_coherence(None, ["a", "b"])

        assert report.valid is False
        assert report.missing == ["a", "b"]
        assert report.message == "coherence_check missing from output"

    def test_non_mapping_block(self):
        report = validate_coherence(["a"], ["a"])
        assert report.valid is False
        assert report.message == "coherence_check missing from output"

    def test_order_follows_required_fields(self):
        report = validate_coherence({}, ["z", "a", "m"])
        assert report.missing == ["z", "a", "m"]

    def test_non_string_values_count_as_present(self):
        report = validate_coherence({"a": False, "b": 0, "c": []}, ["a", "b", "c"])
        assert report.valid is True


class TestFindMissingPrimaryFields:
    def test_empty_values_are_missing(self):
        value = {"a": "", "b": [], "c": {}, "d": None, "e": "ok", "f": 0}
        assert find_missing_primary_fields(value, ["a", "b", "c", "d", "e", "f", "g"]) == [
            "a", "b", "c", "d", "g",
        ]

    def test_non_object_misses_everything(self):
        assert find_missing_primary_fields([1, 2], ["a", "b"]) == ["a", "b"]
        assert find_missing_primary_fields(None, ["a"]) == ["a"]

    def test_complete_object(self):
        assert find_missing_primary_fields({"a": 1, "b": "x"}, ["a", "b"]) == []
