"""
Tests for file name filtering.
"""
import re

import pytest

from s3sync.filters import PathFilter, compile_pattern, matches


class TestMatches:
    """Tests for the matches() predicate."""

    def test_default_matches_everything(self):
        assert matches("anything.bin")
        assert matches("anything.bin", None)
        assert matches("anything.bin", "")

    def test_pattern_applies_to_file_name_only(self):
        # "data" appears in the directory, not the file name
        assert not matches("/srv/data/notes.txt", r"^data")
        assert matches("/srv/archive/data.csv", r"^data")

    def test_csv_pattern(self):
        assert matches("data.csv", r".*\.csv")
        assert not matches("notes.txt", r".*\.csv")

    def test_accepts_compiled_pattern(self):
        assert matches("a.log", re.compile(r"\.log$"))

    def test_invalid_pattern_raises(self):
        with pytest.raises(re.error):
            compile_pattern("(unclosed")
        with pytest.raises(re.error):
            matches("a.txt", "[")


class TestPathFilter:
    """Tests for the compiled PathFilter."""

    def test_accepts_matching_path(self, tmp_path):
        path_filter = PathFilter(r"\.csv$")
        assert path_filter.accepts(tmp_path / "sub" / "data.csv")
        assert not path_filter.accepts(tmp_path / "sub" / "data.csv.tmp")

    def test_blank_pattern_is_match_all(self):
        assert PathFilter("  ").pattern == ".*"

    def test_rejects_empty_name(self):
        assert not PathFilter().accepts("/srv/outbox/")
