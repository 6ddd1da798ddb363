"""Tests for the OData select-query builder."""

from datetime import date, datetime, timezone

import pytest

from src.apisync.sync.domain.query import FinalizedQuery, SelectQuery, format_value


class TestFormatValue:
    """Tests for OData literal rendering."""

    def test_strings_are_quoted_and_escaped(self):
        assert format_value("O'Brien") == "'O''Brien'"

    def test_scalars(self):
        assert format_value(None) == "null"
        assert format_value(True) == "true"
        assert format_value(False) == "false"
        assert format_value(42) == "42"
        assert format_value(1.5) == "1.5"

    def test_datetimes_render_in_utc(self):
        value = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
        assert format_value(value) == "2024-03-01T12:30:00Z"

    def test_naive_datetime_is_treated_as_utc(self):
        assert format_value(datetime(2024, 3, 1)) == "2024-03-01T00:00:00Z"

    def test_dates(self):
        assert format_value(date(2024, 3, 1)) == "2024-03-01"

    def test_lists_render_as_tuples(self):
        assert format_value(["a", 2]) == "('a',2)"


class TestSelectQuery:
    """Tests for building and finalizing queries."""

    def test_fields_are_deduplicated_in_order(self):
        query = SelectQuery("Products").set_fields(["Id", "Name", "Id"])
        query.add_field("Name").add_field("Price")

        assert query.fields == ["Id", "Name", "Price"]

    def test_finalized_params(self):
        query = (
            SelectQuery("Products")
            .set_fields(["Id", "Name"])
            .add_condition("Price", ">=", 10)
            .add_condition("Name", "!=", "x")
            .add_order("Modified")
            .set_limit(25)
        )

        params = query.finalize().to_params()

        assert params == {
            "$select": "Id,Name",
            "$filter": "Price ge 10 and Name ne 'x'",
            "$orderby": "Modified asc",
            "$top": "25",
        }

    def test_no_fields_selects_everything(self):
        assert SelectQuery("Products").finalize().to_params() == {"$select": "*"}

    def test_list_value_with_equals_becomes_in(self):
        query = SelectQuery("Products").add_condition("Status", "=", ["a", "b"])

        assert query.conditions[0].operator == "in"
        assert query.finalize().to_params()["$filter"] == "Status in ('a','b')"

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValueError):
            SelectQuery("Products").add_condition("Name", "LIKE", "a%")

    def test_unknown_sort_direction_rejected(self):
        with pytest.raises(ValueError):
            SelectQuery("Products").add_order("Name", "sideways")

    def test_remove_conditions_for_field(self):
        query = (
            SelectQuery("Products")
            .add_condition("Modified", ">", 1)
            .add_condition("Modified", "<=", 2)
            .add_condition("Name", "=", "x")
        )
        query.remove_conditions_for_field("Modified")

        assert [c.field for c in query.conditions] == ["Name"]

    def test_finalized_query_is_immutable(self):
        query = SelectQuery("Products").set_fields(["Id"])
        final = query.finalize()

        query.add_field("Name")

        assert isinstance(final, FinalizedQuery)
        assert final.fields == ("Id",)
        with pytest.raises(AttributeError):
            final.limit = 5

    def test_str_includes_object_type(self):
        final = SelectQuery("Products").set_fields(["Id"]).finalize()
        assert str(final) == "Products?$select=Id"
