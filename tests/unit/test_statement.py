"""
Unit tests for declarative statements and inline templates.

Tests cover:
- Derived statement rendering
- Parameter binding
- Macro expansion and placeholder rewriting
"""

import json
from dataclasses import dataclass
from enum import Enum

import pytest

from docrepo.errors import ConfigurationError, UnsupportedOperatorError
from docrepo.query.parser import parse_method_name
from docrepo.query.statement import SELECT_ENTITY, StatementBuilder, bind_value
from docrepo.query.template import compile_template

PROPERTIES = ["key", "version", "username", "age"]


class Status(Enum):
    ACTIVE = "active"
    RETIRED = "retired"


@dataclass
class Address:
    city: str
    zip: int


class TestStatementBuilder:
    """Tests for StatementBuilder."""

    @pytest.fixture
    def builder(self):
        return StatementBuilder(collection="user", type_key="_class", id_property="key", version_property="version")

    def build(self, builder, name, args):
        return builder.build(parse_method_name(name, PROPERTIES), args, method_name=name)

    def test_select_all(self, builder):
        """Collection scans filter on the type key."""
        statement = builder.select_all()

        assert statement.text.startswith(SELECT_ENTITY)
        assert "json_extract(d.body, '$._class') = :__collection" in statement.text
        assert statement.params == {"__collection": "user"}

    def test_count_all(self, builder):
        statement = builder.select_all(count=True)
        assert statement.text.startswith("SELECT COUNT(*)")

    def test_equality(self, builder):
        """Equality binds its operand as a named parameter."""
        statement = self.build(builder, "find_by_username", ["ada"])

        assert "json_extract(d.body, '$.username') = :arg0" in statement.text
        assert statement.params["arg0"] == "ada"
        assert "ada" not in statement.text

    def test_id_and_version_columns(self, builder):
        """Id and version predicates use the table columns."""
        statement = self.build(builder, "find_by_key_and_version_greater_than", ["u-1", 3])

        assert "d.id = :arg0" in statement.text
        assert "d.version > :arg1" in statement.text

    def test_regex_and_in(self, builder):
        """REGEXP and json_each membership are rendered; collections bind as JSON."""
        statement = self.build(builder, "find_by_username_regex_and_username_in", ["uname-[123]", ["a", "b"]])

        assert "REGEXP :arg0" in statement.text
        assert "IN (SELECT value FROM json_each(:arg1))" in statement.text
        assert json.loads(statement.params["arg1"]) == ["a", "b"]

    def test_or_groups(self, builder):
        """Disjunctions are parenthesised per group."""
        statement = self.build(builder, "find_by_username_or_age_greater_than", ["ada", 30])

        assert "((json_extract(d.body, '$.username') = :arg0) OR (json_extract(d.body, '$.age') > :arg1))" in (
            statement.text
        )

    def test_order_and_limit(self, builder):
        """Sort and limit are appended to find statements."""
        statement = self.build(builder, "find_top2_by_age_greater_than_order_by_username_desc", [18])

        assert statement.text.endswith("ORDER BY json_extract(d.body, '$.username') DESC LIMIT 2")

    def test_count_ignores_order(self, builder):
        """Counting statements select COUNT(*) without ordering."""
        statement = self.build(builder, "count_by_age_between", [18, 65])

        assert statement.text.startswith("SELECT COUNT(*)")
        assert "BETWEEN :arg0 AND :arg1" in statement.text
        assert "ORDER BY" not in statement.text

    def test_near_unsupported(self, builder):
        """NEAR cannot be rendered."""
        with pytest.raises(UnsupportedOperatorError, match="declarative query required"):
            self.build(builder, "find_by_username_near", ["london"])

    def test_bind_value(self):
        """Operands are bound in the form the mapper stores them."""
        assert bind_value(("a", "b")) == '["a","b"]'
        assert bind_value({"city": "Oslo", "zip": 150}) == '{"city":"Oslo","zip":150}'
        assert bind_value(Status.ACTIVE) == "active"
        assert bind_value([Status.ACTIVE, Status.RETIRED]) == '["active","retired"]'
        assert bind_value(Address("Oslo", 150)) == '{"city":"Oslo","zip":150}'
        assert bind_value(3) == 3


class TestCompileTemplate:
    """Tests for inline query templates."""

    def test_macros_and_named_placeholder(self):
        """Macros expand and $name becomes a bound parameter."""
        compiled = compile_template(
            "#{select_entity} WHERE #{type_filter} AND json_extract(d.body, '$.username') = $name",
            parameter_names=["name"],
            type_key="_class",
            collection="user",
        )

        assert compiled.text.startswith(SELECT_ENTITY)
        assert compiled.text.endswith("json_extract(d.body, '$.username') = :arg0")
        assert compiled.bind(["uname-4"]) == {"__collection": "user", "arg0": "uname-4"}

    def test_positional_placeholders(self):
        """$1, $2 refer to parameters by position."""
        compiled = compile_template(
            "SELECT * FROM documents d WHERE #{id} = $2 AND #{version} = $1",
            parameter_names=["version", "key"],
            type_key="_class",
            collection="user",
        )

        assert compiled.text == "SELECT * FROM documents d WHERE d.id = :arg1 AND d.version = :arg0"
        assert compiled.bind([4, "k"]) == {"arg0": 4, "arg1": "k"}

    def test_literals_and_comments_untouched(self):
        """Dollar signs inside strings and comments are not placeholders."""
        template = "SELECT '$name' AS a, \"$x\" -- $name\n/* $name */ FROM documents d WHERE d.id = $name"
        compiled = compile_template(template, ["name"], type_key="_class", collection="user")

        assert compiled.text == (
            "SELECT '$name' AS a, \"$x\" -- $name\n/* $name */ FROM documents d WHERE d.id = :arg0"
        )

    def test_escaped_quote(self):
        """Doubled quotes stay inside the literal."""
        compiled = compile_template("SELECT 'it''s $x' WHERE d.id = $x", ["x"], type_key="_class", collection="c")
        assert compiled.text == "SELECT 'it''s $x' WHERE d.id = :arg0"

    def test_unknown_macro(self):
        with pytest.raises(ConfigurationError, match="Unknown macro"):
            compile_template("#{nope}", [], type_key="_class", collection="user")

    def test_unknown_placeholder(self):
        with pytest.raises(ConfigurationError, match="does not match any parameter"):
            compile_template("SELECT $missing", ["name"], type_key="_class", collection="user")

    def test_placeholder_out_of_range(self):
        with pytest.raises(ConfigurationError, match="out of range"):
            compile_template("SELECT $3", ["a", "b"], type_key="_class", collection="user")
