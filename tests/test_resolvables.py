"""Tests for resolvable values and JSON path traversal."""

import httpx
import pytest

from apiplan.context import Context, NamedDatabase
from apiplan.errors import DeclarationError, ResolutionError
from apiplan.resolvables import (
    And,
    ApiCall,
    Body,
    BodyPath,
    DefaultVar,
    Env,
    First,
    Header,
    Jsonify,
    JsonPath,
    JsonTraverse,
    Last,
    Len,
    Nth,
    Or,
    Query,
    QueryRows,
    Status,
    TemplateString,
    Var,
    decode_body,
    json_path,
    resolve_value,
)

from conftest import StubDoer


def _with_response(ctx, status=200, body=None, headers=None):
    ctx.current_response = httpx.Response(status, headers=headers or {})
    ctx.current_body = body
    return ctx


# ── Core resolution ──


class TestResolveValue:
    def test_literals_pass_through(self, ctx):
        assert resolve_value(42, ctx) == 42
        assert resolve_value("plain", ctx) == "plain"
        assert resolve_value(None, ctx) is None

    def test_nested_containers_are_resolved(self, ctx):
        ctx.set_var("id", "C1")
        value = {"name": "Felix", "category": {"id": Var("id")}, "tags": [Var("id"), "x"]}
        assert resolve_value(value, ctx) == {"name": "Felix", "category": {"id": "C1"}, "tags": ["C1", "x"]}

    def test_function_reads_current_body(self, ctx):
        ctx.current_body = {"items": [1, 2, 3]}
        assert resolve_value(lambda body: len(body["items"]), ctx) == 3

    def test_function_error_becomes_resolution_error(self, ctx):
        ctx.current_body = None
        with pytest.raises(ResolutionError):
            resolve_value(lambda body: body["missing"], ctx)

    def test_template_string(self, ctx):
        ctx.set_var("name", "rex")
        assert resolve_value(TemplateString("pet-{$name}"), ctx) == "pet-rex"

    def test_template_escape(self, ctx):
        ctx.set_var("name", "rex")
        assert resolve_value(TemplateString("\\{$name}"), ctx) == "{$name}"

    def test_template_unknown_var(self, ctx):
        with pytest.raises(ResolutionError, match="unknown variable"):
            resolve_value(TemplateString("{$nope}"), ctx)


class TestVariables:
    def test_var(self, ctx):
        ctx.set_var("a", 1)
        assert Var("a").resolve(ctx) == 1

    def test_unknown_var_raises(self, ctx):
        with pytest.raises(ResolutionError):
            Var("missing").resolve(ctx)

    def test_default_var(self, ctx):
        assert DefaultVar("missing", "fallback").resolve(ctx) == "fallback"
        ctx.set_var("missing", "set")
        assert DefaultVar("missing", "fallback").resolve(ctx) == "set"

    def test_env(self, ctx, monkeypatch):
        monkeypatch.setenv("APIPLAN_TEST_ENV", "yes")
        assert Env("APIPLAN_TEST_ENV").resolve(ctx) == "yes"
        monkeypatch.delenv("APIPLAN_TEST_ENV")
        assert Env("APIPLAN_TEST_ENV").resolve(ctx) == ""


# ── JSON paths ──


class TestJsonPath:
    def test_dotted_keys(self):
        assert json_path({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_list_keywords(self):
        data = [{"id": 1}, {"id": 2}, {"id": 3}]
        assert json_path(data, "LEN") == 3
        assert json_path(data, "first") == {"id": 1}
        assert json_path(data, "LAST") == {"id": 3}
        assert json_path(data, "-1") == {"id": 3}

    def test_index_inside_path(self):
        assert json_path({"items": [{"id": "x"}]}, "items.0.id") == "x"

    def test_keywords_at_any_depth(self):
        data = {"meta": {"tags": {"a": 1, "b": 2}}, "items": [[1, 2], [3]]}
        assert json_path(data, "meta.tags.LEN") == 2
        assert json_path(data, "meta.LEN") == 1
        assert json_path(data, "items.LAST.LEN") == 1
        assert json_path(data["items"], "0.1") == 2

    def test_key_named_len_wins(self):
        assert json_path({"a": {"LEN": "x", "b": 1}}, "a.LEN") == "x"

    def test_json_text_is_parsed(self, ctx):
        assert json_path('{"hello": "world"}', "hello", ctx) == "world"
        assert '{"hello": "world"}' in ctx.json_cache

    def test_missing_key(self):
        with pytest.raises(ResolutionError, match="does not exist"):
            json_path({"a": 1}, "b")

    def test_out_of_range(self):
        with pytest.raises(ResolutionError, match="out of range"):
            json_path([1], "3")

    def test_empty_array(self):
        with pytest.raises(ResolutionError, match="empty array"):
            json_path([], "FIRST")

    def test_into_nil(self):
        with pytest.raises(ResolutionError, match="nil"):
            json_path(None, "a")

    def test_into_scalar(self):
        with pytest.raises(ResolutionError):
            json_path(5, "a")

    def test_nested_json_path_resolvables(self, ctx):
        ctx.current_body = [{"id": "C1"}]
        assert JsonPath(JsonPath(Body, "0"), "id").resolve(ctx) == "C1"

    def test_traverse_names_composed_path(self, ctx):
        ctx.current_body = {"a": {"b": 1}}
        assert JsonTraverse(Body, "a", "b").resolve(ctx) == 1
        with pytest.raises(ResolutionError, match="'a.x'"):
            JsonTraverse(Body, "a", "x").resolve(ctx)

    def test_body_path(self, ctx):
        ctx.current_body = {"hello": "world"}
        assert BodyPath("hello").resolve(ctx) == "world"


# ── Response & collections ──


class TestResponseValues:
    def test_status_and_header(self, ctx):
        _with_response(ctx, 201, headers={"X-Trace": "abc"})
        assert Status.resolve(ctx) == 201
        assert Header("x-trace").resolve(ctx) == "abc"
        assert Header("missing").resolve(ctx) is None

    def test_no_response(self, ctx):
        with pytest.raises(ResolutionError):
            Status.resolve(ctx)

    def test_len_first_last_nth(self, ctx):
        ctx.current_body = [1, 2, 3]
        assert Len(Body).resolve(ctx) == 3
        assert Len(5).resolve(ctx) == -1
        assert First(Body).resolve(ctx) == 1
        assert Last(Body).resolve(ctx) == 3
        assert Nth(Body, 1).resolve(ctx) == 2
        assert First([]).resolve(ctx) is None

    def test_jsonify(self, ctx):
        assert Jsonify('{"a": [1]}').resolve(ctx) == {"a": [1]}
        with pytest.raises(ResolutionError):
            Jsonify("{nope").resolve(ctx)

    def test_and_or(self, ctx):
        assert And(True, True).resolve(ctx) is True
        assert And(True, False).resolve(ctx) is False
        assert Or(False, True).resolve(ctx) is True
        with pytest.raises(ResolutionError, match="expected bool"):
            And(1).resolve(ctx)


# ── Side calls & databases ──


class TestApiCall:
    def test_side_call_returns_status_body_headers(self):
        doer = StubDoer((200, {"ok": True}, {"X-Id": "7"}))
        ctx = Context(host="http://api.test", http_do=doer)
        ctx.set_var("id", 7)
        out = ApiCall("get", TemplateString("/things/{$id}")).resolve(ctx)
        assert out["status"] == 200
        assert out["body"] == {"ok": True}
        assert out["headers"]["x-id"] == "7"
        assert str(doer.requests[0].url) == "http://api.test/things/7"


class TestQueries:
    def test_query_rows_and_query(self, ctx, sqlite_db):
        sqlite_db.execute("INSERT INTO pets (id, name) VALUES ('p1', 'Felix')")
        ctx.dbs["main"] = NamedDatabase(sqlite_db)
        assert QueryRows("SELECT id, name FROM pets").resolve(ctx) == [{"id": "p1", "name": "Felix"}]
        assert Query("SELECT name FROM pets WHERE id = ?", "p1").resolve(ctx) == "Felix"
        assert Query("SELECT name FROM pets WHERE id = ?", "none").resolve(ctx) is None

    def test_non_select_rejected(self):
        with pytest.raises(DeclarationError, match="SELECT"):
            Query("DELETE FROM pets")
        with pytest.raises(DeclarationError, match="SELECT"):
            QueryRows("UPDATE pets SET name = 'x'")


def test_decode_body():
    assert decode_body(b"") is None
    assert decode_body(b'{"a": 1}') == {"a": 1}
    assert decode_body(b"plain text") == "plain text"
