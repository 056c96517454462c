"""
Tests for reference resolution and value rendering
"""

import pytest
from atlas.models.grid import ColumnDefinition
from atlas.services.reference_service import (
    get_value_by_path,
    is_empty_value,
    resolve_record_references,
    resolve_references,
    stringify_value,
)


@pytest.fixture
def columns():
    return [
        ColumnDefinition(id="name", header="Name"),
        ColumnDefinition(id="name_full", header="Full Name"),
        ColumnDefinition(id="employees", header="Employees"),
        ColumnDefinition(id="city", header="City"),
    ]


class TestStringifyValue:
    """Test how cell values render into text"""

    def test_none_renders_empty(self):
        assert stringify_value(None) == ""

    def test_booleans(self):
        assert stringify_value(True) == "true"
        assert stringify_value(False) == "false"

    def test_integral_float_drops_fraction(self):
        assert stringify_value(42.0) == "42"
        assert stringify_value(4.5) == "4.5"

    def test_containers_render_as_json(self):
        assert stringify_value({"a": 1}) == '{"a": 1}'
        assert stringify_value([1, 2]) == "[1, 2]"

    def test_empty_values(self):
        assert is_empty_value(None)
        assert is_empty_value("")
        assert not is_empty_value(0)
        assert not is_empty_value("x")


class TestResolveReferences:
    """Test /column_id token substitution"""

    def test_substitutes_value(self, columns):
        row = {"id": "r1", "name": "Acme", "city": "Berlin"}
        assert resolve_references("Find /name in /city", row, columns) == "Find Acme in Berlin"

    def test_longest_id_wins(self, columns):
        row = {"id": "r1", "name": "Acme", "name_full": "Acme GmbH"}
        assert resolve_references("/name_full vs /name", row, columns) == "Acme GmbH vs Acme"

    def test_missing_value_resolves_empty(self, columns):
        assert resolve_references("[/city]", {"id": "r1"}, columns) == "[]"

    def test_unknown_token_left_alone(self, columns):
        row = {"id": "r1", "name": "Acme"}
        assert resolve_references("/unknown and /names", row, columns) == "/unknown and /names"

    def test_numbers_render_without_fraction(self, columns):
        row = {"id": "r1", "employees": 120.0}
        assert resolve_references("/employees staff", row, columns) == "120 staff"

    def test_substituted_value_is_not_resolved_again(self, columns):
        row = {"id": "r1", "name": "/city", "city": "Berlin"}
        assert resolve_references("/name", row, columns) == "/city"

    def test_empty_text(self, columns):
        assert resolve_references("", {"id": "r1"}, columns) == ""
        assert resolve_references(None, {"id": "r1"}, columns) == ""

    def test_record_references(self, columns):
        row = {"id": "r1", "name": "Acme"}
        headers = resolve_record_references({"X-Company": "/name", "Accept": "json"}, row, columns)
        assert headers == {"X-Company": "Acme", "Accept": "json"}


class TestValueByPath:
    """Test dotted path lookups into decoded JSON"""

    def test_nested_path(self):
        data = {"data": {"items": [{"name": "first"}, {"name": "second"}]}}
        assert get_value_by_path(data, "data.items[1].name") == "second"

    def test_missing_path(self):
        data = {"data": {"items": []}}
        assert get_value_by_path(data, "data.items[0].name") is None
        assert get_value_by_path(data, "data.other") is None
        assert get_value_by_path(data, "") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
