"""
Tests for row deduplication
"""

import pytest
from atlas.services.dedup_service import dedupe_rows


@pytest.fixture
def rows():
    return [
        {"id": 1, "email": "a@x.com"},
        {"id": 2, "email": "b@x.com"},
        {"id": 3, "email": "a@x.com"},
    ]


class TestDedupeRows:
    """Test keep policies and empty-value handling"""

    def test_keep_newest_preserves_order(self, rows):
        result = dedupe_rows(rows, "email", "newest")
        assert [r["id"] for r in result] == [2, 3]

    def test_keep_oldest(self, rows):
        result = dedupe_rows(rows, "email", "oldest")
        assert [r["id"] for r in result] == [1, 2]

    def test_empty_values_always_kept(self):
        rows = [
            {"id": 1, "email": ""},
            {"id": 2},
            {"id": 3, "email": None},
            {"id": 4, "email": ""},
        ]
        assert len(dedupe_rows(rows, "email", "oldest")) == 4
        assert len(dedupe_rows(rows, "email", "newest")) == 4

    def test_compares_string_form(self):
        rows = [{"id": 1, "n": 5}, {"id": 2, "n": "5"}, {"id": 3, "n": 5.0}]
        assert [r["id"] for r in dedupe_rows(rows, "n")] == [1]

    def test_idempotent(self, rows):
        for keep in ("oldest", "newest"):
            once = dedupe_rows(rows, "email", keep)
            assert dedupe_rows(once, "email", keep) == once

    def test_input_not_modified(self, rows):
        dedupe_rows(rows, "email", "newest")
        assert len(rows) == 3

    def test_unknown_policy(self, rows):
        with pytest.raises(ValueError):
            dedupe_rows(rows, "email", "random")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
