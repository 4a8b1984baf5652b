"""Tests for expectations and operand comparison."""

from decimal import Decimal

import httpx
import pytest

from apiplan.errors import ResolutionError, UnmetError
from apiplan.expectations import (
    ExpectContains,
    ExpectCreated,
    ExpectEqual,
    ExpectGreaterThan,
    ExpectHasProperties,
    ExpectHeader,
    ExpectLen,
    ExpectLessThan,
    ExpectMatch,
    ExpectMatchesSchema,
    ExpectNil,
    ExpectNotContains,
    ExpectNotEqual,
    ExpectNotGreaterThan,
    ExpectNotNil,
    ExpectOK,
    ExpectOnlyHasProperties,
    ExpectStatus,
    ExpectType,
    ExpectVarSet,
    ExpectationFunc,
    Fail,
    requires,
    values_equal,
)
from apiplan.resolvables import Body, JsonPath, Var


@pytest.fixture
def responded(ctx):
    ctx.current_response = httpx.Response(200, headers={"Content-Type": "application/json"})
    ctx.current_body = {"hello": "world", "count": 3, "items": [1, 2], "ok": True}
    return ctx


# ── Status ──


class TestStatus:
    def test_ok_met(self, responded):
        assert ExpectOK().met(responded) is None

    def test_created_unmet_message(self, responded):
        unmet = ExpectCreated().met(responded)
        assert isinstance(unmet, UnmetError)
        assert unmet.msg == 'expected status code 201 "Created"'
        assert unmet.actual.resolved == 200
        assert unmet.name == "ExpectCreated"

    def test_status_from_var(self, responded):
        responded.set_var("want", 200)
        assert ExpectStatus(Var("want")).met(responded) is None

    def test_no_response_is_an_error(self, ctx):
        with pytest.raises(ResolutionError):
            ExpectOK().met(ctx)

    def test_required_is_a_copy(self):
        exp = ExpectOK()
        req = exp.required()
        assert req.must and not exp.must
        assert all(e.must for e in requires([ExpectOK(), ExpectCreated()]))


# ── Comparators ──


class TestComparators:
    def test_equal_via_json_path(self, responded):
        assert ExpectEqual(JsonPath(Body, "hello"), "world").met(responded) is None

    def test_numbers_compare_by_value(self, ctx):
        assert ExpectEqual(1, 1.0).met(ctx) is None
        assert ExpectEqual(Decimal("2.50"), 2.5).met(ctx) is None
        assert ExpectLessThan(1, 1.5).met(ctx) is None

    def test_numeric_string_is_coerced(self, ctx):
        assert ExpectEqual("10", 10).met(ctx) is None
        assert ExpectGreaterThan(11, "10").met(ctx) is None

    def test_non_numeric_string_cannot_compare(self, ctx):
        unmet = ExpectGreaterThan("abc", 1).met(ctx)
        assert unmet is not None
        assert unmet.msg == "cannot compare > on: v1 (left) = str, v2 (right) = int"
        assert unmet.left.coercion_error is not None

    def test_bool_rules(self, ctx):
        assert ExpectEqual(True, True).met(ctx) is None
        assert ExpectEqual(True, 1).met(ctx) is None
        assert ExpectEqual(False, 0).met(ctx) is None
        assert ExpectEqual("TRUE", True).met(ctx) is None
        assert ExpectGreaterThan(True, False).met(ctx) is not None

    def test_nil_handling(self, ctx):
        assert ExpectEqual(None, None).met(ctx) is None
        assert ExpectNotEqual(None, 1).met(ctx) is None
        unmet = ExpectLessThan(None, 1).met(ctx)
        assert unmet.msg == "cannot compare with nil"

    def test_nan_has_no_order(self, ctx):
        nan = float("nan")
        unmet = ExpectLessThan(nan, 1).met(ctx)
        assert unmet.msg == "cannot compare < with NaN"
        assert ExpectGreaterThan(1, Decimal("NaN")).met(ctx) is not None
        assert ExpectNotGreaterThan("5", nan).met(ctx) is not None
        assert ExpectEqual(nan, nan).met(ctx) is not None
        assert ExpectNotEqual(nan, 1).met(ctx) is None

    def test_unmet_default_message(self, ctx):
        unmet = ExpectEqual(1, 2).met(ctx)
        assert unmet.msg == "expected =="
        assert unmet.is_comparator
        assert "Left:" in unmet.test_format()

    def test_negated(self, ctx):
        assert ExpectNotGreaterThan(1, 2).met(ctx) is None
        assert ExpectNotGreaterThan(3, 2).met(ctx).comparator == "NOT(>)"

    def test_containers(self, ctx):
        assert ExpectEqual({"a": [1, 2.0]}, {"a": [1.0, 2]}).met(ctx) is None
        assert ExpectEqual([1, 2], [2, 1]).met(ctx) is not None

    def test_unresolvable_operand_raises(self, ctx):
        with pytest.raises(ResolutionError, match="value v1 \\(left\\)"):
            ExpectEqual(Var("missing"), 1).met(ctx)


def test_values_equal():
    assert values_equal(1, Decimal("1.0"))
    assert not values_equal(1, "1")
    assert not values_equal(None, 0)


# ── Value expectations ──


class TestValueExpectations:
    def test_len(self, responded):
        assert ExpectLen(JsonPath(Body, "items"), 2).met(responded) is None
        assert ExpectLen(JsonPath(Body, "items"), 3).met(responded) is not None
        assert "no length" in ExpectLen(5, 1).met(responded).msg

    def test_contains(self, responded):
        assert ExpectContains(JsonPath(Body, "items"), 2).met(responded) is None
        assert ExpectContains("hello world", "world").met(responded) is None
        assert ExpectContains(Body, "hello").met(responded) is None
        assert ExpectNotContains(JsonPath(Body, "items"), 5).met(responded) is None
        assert ExpectContains(5, 1).met(responded).msg.startswith("cannot check contains")

    def test_match(self, responded):
        assert ExpectMatch(JsonPath(Body, "hello"), "^wor").met(responded) is None
        assert ExpectMatch(Body, '"count": 3').met(responded) is None
        assert ExpectMatch("abc", "^z").met(responded) is not None

    def test_type(self, responded):
        assert ExpectType(JsonPath(Body, "count"), "integer").met(responded) is None
        assert ExpectType(JsonPath(Body, "ok"), "number").met(responded) is not None
        assert ExpectType(JsonPath(Body, "items"), list).met(responded) is None

    def test_nil(self, ctx):
        assert ExpectNil(None).met(ctx) is None
        assert ExpectNotNil("x").met(ctx) is None
        assert ExpectNil("x").met(ctx).msg == "expected nil"

    def test_properties(self, responded):
        assert ExpectHasProperties(Body, "hello", "count").met(responded) is None
        assert ExpectHasProperties(Body, "missing").met(responded) is not None
        assert ExpectOnlyHasProperties(Body, "hello").met(responded).msg.startswith("unexpected properties")

    def test_header(self, responded):
        assert ExpectHeader("content-type", "application/json").met(responded) is None
        assert ExpectHeader("X-Missing", "v").met(responded) is not None

    def test_var_set(self, ctx):
        assert ExpectVarSet("id").met(ctx) is not None
        ctx.set_var("id", None)
        assert ExpectVarSet(Var("id")).met(ctx) is None

    def test_schema(self, responded):
        schema = {"type": "object", "required": ["hello"], "properties": {"count": {"type": "integer"}}}
        assert ExpectMatchesSchema(Body, schema).met(responded) is None
        unmet = ExpectMatchesSchema(Body, {"type": "object", "required": ["nope"]}).met(responded)
        assert unmet.msg.startswith("schema validation failed")

    def test_fail(self, ctx):
        assert Fail("always").met(ctx).msg == "always"


class TestExpectationFunc:
    def test_outcomes(self, ctx):
        assert ExpectationFunc(lambda c: None).met(ctx) is None
        assert ExpectationFunc(lambda c: True).met(ctx) is None
        assert ExpectationFunc(lambda c: "bad thing").met(ctx).msg == "bad thing"
        assert ExpectationFunc(lambda c: False).met(ctx) is not None

    def test_raising_is_resolution_error(self, ctx):
        def boom(c):
            raise KeyError("x")

        with pytest.raises(ResolutionError, match="raised"):
            ExpectationFunc(boom).met(ctx)
