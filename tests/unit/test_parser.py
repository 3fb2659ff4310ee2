"""
Unit tests for the method-name parser.

Tests cover:
- Prefixes and subjects
- Operators and their operand counts
- And / Or grouping and ordering
- Grammar errors
"""

import pytest

from docrepo.errors import ConfigurationError
from docrepo.query.parser import (
    Operator,
    Subject,
    is_derivable,
    parse_method_name,
    subject_of,
)

PROPERTIES = ["key", "version", "username", "age", "created_at", "created", "active", "email"]


class TestPrefixes:
    """Tests for method prefixes."""

    @pytest.mark.parametrize(
        "name,subject",
        [
            ("find_by_username", Subject.FIND),
            ("read_by_username", Subject.FIND),
            ("get_by_username", Subject.FIND),
            ("query_by_username", Subject.FIND),
            ("find_all_by_username", Subject.FIND),
            ("count_by_username", Subject.COUNT),
            ("exists_by_username", Subject.EXISTS),
            ("delete_by_username", Subject.DELETE),
            ("remove_by_username", Subject.DELETE),
        ],
    )
    def test_subject(self, name, subject):
        """Each prefix maps to its subject."""
        tree = parse_method_name(name, PROPERTIES)
        assert tree.subject is subject
        assert subject_of(name) is subject

    def test_limits(self):
        """first and topN limit find methods."""
        assert parse_method_name("find_first_by_username", PROPERTIES).limit == 1
        assert parse_method_name("find_top5_by_age", PROPERTIES).limit == 5
        assert parse_method_name("find_by_age", PROPERTIES).limit is None

    def test_limit_on_count_rejected(self):
        """Limits are only allowed on find methods."""
        with pytest.raises(ConfigurationError, match="only supported on find"):
            parse_method_name("count_top3_by_age", PROPERTIES)

    def test_is_derivable(self):
        """Names without a query prefix are not derivable."""
        assert is_derivable("find_by_username")
        assert not is_derivable("find_all")
        assert not is_derivable("lookup")
        assert subject_of("lookup") is None


class TestOperators:
    """Tests for predicate operators."""

    @pytest.mark.parametrize(
        "suffix,operator",
        [
            ("", Operator.EQUALS),
            ("_is", Operator.EQUALS),
            ("_equals", Operator.EQUALS),
            ("_not", Operator.NOT),
            ("_contains", Operator.CONTAINS),
            ("_starting_with", Operator.STARTING_WITH),
            ("_ending_with", Operator.ENDING_WITH),
            ("_regex", Operator.REGEX),
            ("_matches", Operator.REGEX),
            ("_in", Operator.IN),
            ("_not_in", Operator.NOT_IN),
            ("_greater_than", Operator.GREATER_THAN),
            ("_greater_than_equal", Operator.GREATER_THAN_EQUAL),
            ("_less_than", Operator.LESS_THAN),
            ("_less_than_equal", Operator.LESS_THAN_EQUAL),
            ("_between", Operator.BETWEEN),
            ("_is_null", Operator.IS_NULL),
            ("_is_not_null", Operator.IS_NOT_NULL),
            ("_true", Operator.TRUE),
            ("_false", Operator.FALSE),
            ("_near", Operator.NEAR),
        ],
    )
    def test_suffix(self, suffix, operator):
        """Every operator keyword is recognised."""
        tree = parse_method_name(f"find_by_username{suffix}", PROPERTIES)

        (predicate,) = tree.predicates
        assert predicate.property == "username"
        assert predicate.operator is operator

    def test_arity(self):
        """Operand counts add up across predicates."""
        tree = parse_method_name("find_by_age_between_and_active_true_and_email", PROPERTIES)

        assert [p.operator for p in tree.predicates] == [Operator.BETWEEN, Operator.TRUE, Operator.EQUALS]
        assert [p.arg_index for p in tree.predicates] == [0, 2, 2]
        assert tree.arity == 3

    def test_args_slicing(self):
        """Predicates pick their operands out of the call arguments."""
        tree = parse_method_name("find_by_age_between_and_email", PROPERTIES)
        between, email = tree.predicates

        assert between.args([18, 65, "a@b"]) == (18, 65)
        assert email.args([18, 65, "a@b"]) == ("a@b",)


class TestStructure:
    """Tests for grouping, ordering and property matching."""

    def test_and(self):
        """_and_ joins predicates in one group."""
        tree = parse_method_name("find_by_username_regex_and_username_in", PROPERTIES)

        assert len(tree.groups) == 1
        assert [p.operator for p in tree.predicates] == [Operator.REGEX, Operator.IN]
        assert not tree.is_disjunction

    def test_or(self):
        """_or_ starts a new group."""
        tree = parse_method_name("find_by_username_or_email_and_age", PROPERTIES)

        assert tree.is_disjunction
        assert [[p.property for p in g] for g in tree.groups] == [["username"], ["email", "age"]]

    def test_underscore_property(self):
        """Properties containing underscores match longest first."""
        tree = parse_method_name("find_by_created_at_greater_than", PROPERTIES)

        (predicate,) = tree.predicates
        assert predicate.property == "created_at"
        assert predicate.operator is Operator.GREATER_THAN

    def test_order_by(self):
        """_order_by_ appends sort orders."""
        tree = parse_method_name("find_by_age_greater_than_order_by_username_desc_and_created_at", PROPERTIES)

        assert [(s.property, s.descending) for s in tree.sort] == [("username", True), ("created_at", False)]
        assert tree.arity == 1

    def test_unknown_property(self):
        """An unknown property is a configuration error naming the method."""
        with pytest.raises(ConfigurationError) as exc_info:
            parse_method_name("find_by_nickname", PROPERTIES, type_name="User")
        assert "find_by_nickname" in exc_info.value.message
        assert exc_info.value.type_name == "User"

    def test_missing_criteria(self):
        """A prefix without criteria is rejected."""
        with pytest.raises(ConfigurationError):
            parse_method_name("find_by_", PROPERTIES)

    def test_missing_prefix(self):
        """Names without a prefix are rejected."""
        with pytest.raises(ConfigurationError, match="expected a prefix"):
            parse_method_name("lookup_username", PROPERTIES)
