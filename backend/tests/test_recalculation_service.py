"""
Tests for formula and linked-column recalculation
"""

import pytest
from atlas.models.grid import ColumnDefinition, LinkedColumn, SheetTab
from atlas.services.recalculation_service import (
    FORMULA_ERROR,
    MISSING_COLUMN,
    MISSING_SHEET,
    clean_formula_output,
    find_dependents,
    propagate_change,
    recalculate_sheet,
)


def make_sheet(sheet_id, columns, rows):
    return SheetTab(id=sheet_id, name=sheet_id, columns=columns, rows=rows)


@pytest.fixture
def source_sheet():
    return make_sheet(
        "sheet2",
        [ColumnDefinition(id="key", header="Key"), ColumnDefinition(id="val", header="Value")],
        [{"id": "s1", "key": "X", "val": "42"}, {"id": "s2", "key": "Y", "val": "7"}],
    )


@pytest.fixture
def linked_sheet():
    return make_sheet(
        "sheet1",
        [
            ColumnDefinition(id="a", header="A"),
            ColumnDefinition(
                id="b",
                header="B",
                linked_column=LinkedColumn(
                    source_sheet_id="sheet2",
                    source_column_id="val",
                    match_column_id="a",
                    source_match_column_id="key",
                ),
            ),
        ],
        [{"id": "r1", "a": "X", "b": ""}],
    )


class TestFormulas:
    """Test the formula pass"""

    def test_quotes_and_dash_text(self):
        sheet = make_sheet(
            "s",
            [
                ColumnDefinition(id="company_name", header="Company"),
                ColumnDefinition(id="label", header="Label", formula="'/company_name - Verified'"),
            ],
            [{"id": "r1", "company_name": "Acme"}],
        )
        result = recalculate_sheet(sheet, [sheet])
        assert result.rows[0]["label"] == "Acme - Verified"

    def test_concatenation_cleanup(self):
        assert clean_formula_output('"Hello " + Acme + " GmbH"') == "Hello Acme GmbH"

    def test_input_sheet_not_modified(self):
        sheet = make_sheet(
            "s",
            [ColumnDefinition(id="x", header="X"), ColumnDefinition(id="y", header="Y", formula="/x!")],
            [{"id": "r1", "x": "hi", "y": ""}],
        )
        recalculate_sheet(sheet, [sheet])
        assert sheet.rows[0]["y"] == ""

    def test_formula_error_marks_only_that_cell(self, monkeypatch):
        from atlas.services import recalculation_service

        def explode(formula, row, columns):
            if formula == "bad":
                raise RuntimeError("boom")
            return "ok"

        monkeypatch.setattr(recalculation_service, "evaluate_formula", explode)
        sheet = make_sheet(
            "s",
            [
                ColumnDefinition(id="good", header="Good", formula="fine"),
                ColumnDefinition(id="broken", header="Broken", formula="bad"),
            ],
            [{"id": "r1"}, {"id": "r2"}],
        )
        result = recalculate_sheet(sheet, [sheet])
        for row in result.rows:
            assert row["good"] == "ok"
            assert row["broken"] == FORMULA_ERROR

    def test_sheet_without_derived_columns_unchanged(self):
        sheet = make_sheet("s", [ColumnDefinition(id="x", header="X")], [{"id": "r1", "x": 1}])
        assert recalculate_sheet(sheet, [sheet]) is sheet


class TestLinks:
    """Test the linked-column pass"""

    def test_lookup_by_match_column(self, linked_sheet, source_sheet):
        result = recalculate_sheet(linked_sheet, [linked_sheet, source_sheet])
        assert result.rows[0]["b"] == "42"

    def test_no_matching_row_is_empty(self, linked_sheet, source_sheet):
        sheet = linked_sheet.model_copy(update={"rows": [{"id": "r1", "a": "Z", "b": "old"}]})
        assert recalculate_sheet(sheet, [sheet, source_sheet]).rows[0]["b"] == ""

    def test_empty_match_value_is_empty(self, linked_sheet, source_sheet):
        sheet = linked_sheet.model_copy(update={"rows": [{"id": "r1", "a": "", "b": "old"}]})
        assert recalculate_sheet(sheet, [sheet, source_sheet]).rows[0]["b"] == ""

    def test_missing_source_sheet_marker(self, linked_sheet):
        assert recalculate_sheet(linked_sheet, [linked_sheet]).rows[0]["b"] == MISSING_SHEET

    def test_missing_source_column_marker(self, linked_sheet, source_sheet):
        source = source_sheet.model_copy(update={"columns": [ColumnDefinition(id="key", header="Key")]})
        assert recalculate_sheet(linked_sheet, [linked_sheet, source]).rows[0]["b"] == MISSING_COLUMN

    def test_match_on_row_id_by_default(self, source_sheet):
        sheet = make_sheet(
            "sheet1",
            [
                ColumnDefinition(id="ref", header="Ref"),
                ColumnDefinition(
                    id="val",
                    header="Val",
                    linked_column=LinkedColumn(source_sheet_id="sheet2", source_column_id="val", match_column_id="ref"),
                ),
            ],
            [{"id": "r1", "ref": "s2", "val": ""}],
        )
        assert recalculate_sheet(sheet, [sheet, source_sheet]).rows[0]["val"] == "7"

    def test_link_wins_over_formula(self, source_sheet):
        sheet = make_sheet(
            "sheet1",
            [
                ColumnDefinition(id="a", header="A"),
                ColumnDefinition(
                    id="b",
                    header="B",
                    formula="formula text",
                    linked_column=LinkedColumn(
                        source_sheet_id="sheet2", source_column_id="val",
                        match_column_id="a", source_match_column_id="key",
                    ),
                ),
            ],
            [{"id": "r1", "a": "Y", "b": ""}],
        )
        assert recalculate_sheet(sheet, [sheet, source_sheet]).rows[0]["b"] == "7"

    def test_self_link_reads_formula_pass(self):
        boss_link = LinkedColumn(
            source_sheet_id="team", source_column_id="boss_name",
            match_column_id="boss", source_match_column_id="name",
        )
        columns = [
            ColumnDefinition(id="name", header="Name"),
            ColumnDefinition(id="boss", header="Boss"),
            ColumnDefinition(id="boss_name", header="Boss Name", linked_column=boss_link),
        ]
        rows = [
            {"id": "r1", "name": "A", "boss": "", "boss_name": "stale"},
            {"id": "r2", "name": "B", "boss": "A", "boss_name": ""},
        ]
        forward = make_sheet("team", columns, rows)
        backward = make_sheet("team", columns, list(reversed(rows)))

        forward_result = recalculate_sheet(forward, [forward])
        backward_result = recalculate_sheet(backward, [backward])

        assert forward_result.get_row("r2")["boss_name"] == "stale"
        assert backward_result.get_row("r2")["boss_name"] == "stale"
        assert forward_result.get_row("r1")["boss_name"] == ""
        assert rows[0]["boss_name"] == "stale"

    def test_idempotent(self, linked_sheet, source_sheet):
        once = recalculate_sheet(linked_sheet, [linked_sheet, source_sheet])
        twice = recalculate_sheet(once, [once, source_sheet])
        assert once.rows == twice.rows


class TestPropagation:
    """Test dependency lookup and fan-out"""

    def test_find_dependents(self, linked_sheet, source_sheet):
        sheets = [linked_sheet, source_sheet]
        assert find_dependents("sheet2", "val", sheets) == {"sheet1"}
        assert find_dependents("sheet2", "key", sheets) == set()
        assert find_dependents("sheet1", "a", sheets) == set()

    def test_source_edit_updates_dependent(self, linked_sheet, source_sheet):
        sheets = [recalculate_sheet(linked_sheet, [linked_sheet, source_sheet]), source_sheet]
        edited = source_sheet.model_copy(update={"rows": [{"id": "s1", "key": "X", "val": "99"}]})
        sheets[1] = edited

        result = propagate_change(sheets, "sheet2", ["val"])
        assert result[0].rows[0]["b"] == "99"

    def test_match_key_edit_updates_dependent(self, linked_sheet, source_sheet):
        sheets = [recalculate_sheet(linked_sheet, [linked_sheet, source_sheet]), source_sheet]
        sheets[1] = source_sheet.model_copy(update={"rows": [{"id": "s1", "key": "Q", "val": "42"}]})

        result = propagate_change(sheets, "sheet2", ["key"])
        assert result[0].rows[0]["b"] == ""

    def test_unrelated_column_leaves_dependent_alone(self, linked_sheet, source_sheet):
        sheets = [linked_sheet, source_sheet]
        result = propagate_change(sheets, "sheet2", ["other"])
        assert result[0] is linked_sheet

    def test_mutual_links_recalculate_each_sheet_once(self, monkeypatch):
        from atlas.services import recalculation_service

        sheet_a = make_sheet(
            "a",
            [
                ColumnDefinition(id="key", header="Key"),
                ColumnDefinition(id="a_val", header="A Value"),
                ColumnDefinition(id="from_b", header="From B", linked_column=LinkedColumn(
                    source_sheet_id="b", source_column_id="b_val",
                    match_column_id="key", source_match_column_id="key",
                )),
            ],
            [{"id": "a1", "key": "K", "a_val": "1", "from_b": ""}],
        )
        sheet_b = make_sheet(
            "b",
            [
                ColumnDefinition(id="key", header="Key"),
                ColumnDefinition(id="b_val", header="B Value"),
                ColumnDefinition(id="from_a", header="From A", linked_column=LinkedColumn(
                    source_sheet_id="a", source_column_id="a_val",
                    match_column_id="key", source_match_column_id="key",
                )),
            ],
            [{"id": "b1", "key": "K", "b_val": "2", "from_a": ""}],
        )
        edited = sheet_a.model_copy(update={"rows": [{**sheet_a.rows[0], "a_val": "10"}]})

        calls = []
        original = recalculation_service.recalculate_sheet

        def counting(sheet, all_sheets):
            calls.append(sheet.id)
            return original(sheet, all_sheets)

        monkeypatch.setattr(recalculation_service, "recalculate_sheet", counting)
        result = propagate_change([edited, sheet_b], "a", ["a_val"])

        assert calls == ["a", "b"]
        assert result[1].rows[0]["from_a"] == "10"
        assert result[0].rows[0]["from_b"] == "2"

    def test_unknown_sheet_is_noop(self, linked_sheet, source_sheet):
        sheets = [linked_sheet, source_sheet]
        assert propagate_change(sheets, "nope", ["val"]) is sheets


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
