import math

import pytest

from indexer.filters import F, FilterOp, matches, to_jsonpath


class TestJsonPathCompilation:
    """Filter expressions compile to PostgreSQL JSON path predicates"""

    def test_absent_expression_compiles_to_empty_string(self):
        """No filter means no predicate."""
        assert to_jsonpath(None) == ""

    def test_comparisons(self):
        """Each comparison operator maps onto the JSON path operator."""
        assert to_jsonpath(F.eq("versionId", "v1")) == '$."versionId" == "v1"'
        assert to_jsonpath(F.ne("chunkIndex", 0)) == '$."chunkIndex" != 0'
        assert to_jsonpath(F.gt("tokenCount", 10)) == '$."tokenCount" > 10'
        assert to_jsonpath(F.gte("score", 0.5)) == '$."score" >= 0.5'
        assert to_jsonpath(F.lt("tokenCount", 3)) == '$."tokenCount" < 3'
        assert to_jsonpath(F.lte("tokenCount", 3)) == '$."tokenCount" <= 3'

    def test_literals(self):
        """Booleans and null use JSON literals."""
        assert to_jsonpath(F.eq("draft", True)) == '$."draft" == true'
        assert to_jsonpath(F.eq("draft", False)) == '$."draft" == false'
        assert to_jsonpath(F.eq("title", None)) == '$."title" == null'

    def test_logical_operators(self):
        """AND/OR are parenthesized; NOT wraps its operand."""
        expr = F.eq("a", 1) & F.ne("b", "x")
        assert to_jsonpath(expr) == '($."a" == 1 && $."b" != "x")'
        assert to_jsonpath(F.or_(F.eq("a", 1), F.eq("a", 2))) == '($."a" == 1 || $."a" == 2)'
        assert to_jsonpath(~F.eq("a", 1)) == '!($."a" == 1)'

    def test_membership(self):
        """IN expands to a disjunction; NIN negates it; empty IN never matches."""
        assert to_jsonpath(F.in_("lang", ["java", "kotlin"])) == \
            '($."lang" == "java" || $."lang" == "kotlin")'
        assert to_jsonpath(F.nin("lang", ["java"])) == '!(($."lang" == "java"))'
        assert to_jsonpath(F.in_("lang", [])) == "(1 == 0)"
        assert to_jsonpath(F.nin("lang", [])) == "!((1 == 0))"

    @pytest.mark.parametrize("expression,expected", [
        (F.eq("a", 1) & F.in_("lang", []), "($.\"a\" == 1 && (1 == 0))"),
        (F.eq("a", 1) | F.in_("lang", []), "($.\"a\" == 1 || (1 == 0))"),
        (F.eq("a", 1) & F.nin("lang", []), "($.\"a\" == 1 && !((1 == 0)))"),
        (F.not_(F.in_("lang", [])), "!((1 == 0))"),
    ])
    def test_empty_membership_stays_a_predicate(self, expression, expected):
        """Empty lists compile to a comparison usable under &&, || and !."""
        assert to_jsonpath(expression) == expected

    def test_null_checks(self):
        """IS NULL holds for a missing key or a JSON null."""
        assert to_jsonpath(F.is_null("title")) == '!(exists($."title" ? (@ != null)))'
        assert to_jsonpath(F.is_not_null("title")) == 'exists($."title" ? (@ != null))'

    def test_escaping_keys_and_values(self):
        """Quotes, backslashes and control characters are escaped in keys and values."""
        expr = F.eq('we"ird\\key', 'line\nbreak "q"\t')
        assert to_jsonpath(expr) == r'$."we\"ird\\key" == "line\nbreak \"q\"\t"'

    def test_injection_attempt_stays_inside_string(self):
        """A value trying to close the literal cannot add predicates."""
        compiled = to_jsonpath(F.eq("versionId", '" || $."x" == "y'))
        assert compiled == r'$."versionId" == "\" || $.\"x\" == \"y"'

    def test_non_finite_numbers_rejected(self):
        """NaN and infinity have no JSON representation."""
        with pytest.raises(ValueError):
            to_jsonpath(F.eq("score", math.nan))
        with pytest.raises(ValueError):
            to_jsonpath(F.gt("score", math.inf))

    def test_builder_ops(self):
        """Builder helpers produce the expected operator nodes."""
        assert F.in_("k", ["a"]).op == FilterOp.IN
        assert F.is_null("k").right is None
        assert F.not_(F.eq("k", 1)).op == FilterOp.NOT


class TestInProcessEvaluation:
    """matches() evaluates filters against a metadata dict"""

    def test_no_expression_matches_everything(self):
        """An absent filter accepts any metadata."""
        assert matches(None, {"a": 1})
        assert matches(None, None)

    def test_equality_and_types(self):
        """Comparisons between different JSON types never match."""
        assert matches(F.eq("a", 1), {"a": 1})
        assert matches(F.eq("a", 2), {"a": 2.0})
        assert not matches(F.eq("a", 1), {"a": "1"})
        assert not matches(F.eq("a", 1), {})

    def test_ordering(self):
        """Range comparisons work on numbers and strings."""
        assert matches(F.gte("tokenCount", 5), {"tokenCount": 5})
        assert not matches(F.lt("tokenCount", 5), {"tokenCount": 5})
        assert matches(F.lt("title", "b"), {"title": "a"})

    def test_negation_of_unknown_is_unknown(self):
        """NOT over a type mismatch still does not match."""
        assert not matches(~F.eq("a", 1), {"a": "1"})
        assert matches(~F.eq("a", 1), {"a": 2})
        assert matches(~F.eq("a", 1), {})

    def test_or_short_circuits_unknown(self):
        """A true branch wins over an unknown branch."""
        expr = F.eq("a", 1) | F.eq("b", 2)
        assert matches(expr, {"a": "x", "b": 2})
        assert not matches(expr, {"a": "x", "b": 3})

    def test_membership(self):
        """IN and NIN against present and missing keys."""
        assert matches(F.in_("lang", ["java", "kotlin"]), {"lang": "java"})
        assert not matches(F.in_("lang", ["java"]), {})
        assert not matches(F.in_("lang", []), {"lang": "java"})
        assert matches(F.nin("lang", ["java"]), {"lang": "go"})
        assert matches(F.nin("lang", ["java"]), {})
        assert matches(F.eq("a", 1) & F.nin("lang", []), {"a": 1})
        assert not matches(F.eq("a", 1) & F.in_("lang", []), {"a": 1})
        assert matches(F.eq("a", 1) | F.in_("lang", []), {"a": 1})

    def test_null_checks(self):
        """Missing keys and explicit nulls are both null."""
        assert matches(F.is_null("title"), {})
        assert matches(F.is_null("title"), {"title": None})
        assert not matches(F.is_null("title"), {"title": ""})
        assert matches(F.is_not_null("title"), {"title": 0})
