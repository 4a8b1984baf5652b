# apiplan/resolvables.py
"""
Resolvable values.

A resolvable is any value whose final form is only known at execution time:
variables, the current response, JSON paths into it, listener snapshots, rows
from a database. Literal dicts and lists may contain resolvables at any depth;
``resolve_value`` walks them recursively.
"""

from __future__ import annotations

import dataclasses
import inspect
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import httpx

from .errors import DeclarationError, ResolutionError

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

LEN = "LEN"
FIRST = "FIRST"
LAST = "LAST"


class Resolvable(ABC):
    """Anything that can be dereferenced against a Context"""

    @abstractmethod
    def resolve(self, ctx: "Context") -> Any:
        """Return the resolved value or raise ResolutionError"""

    def __str__(self) -> str:
        return type(self).__name__


class TemplateString(str):
    """A string with ``{$name}`` variable markers, escaped with ``\\{$``"""


# ==================== Core resolution ====================

def resolve_value(value: Any, ctx: "Context") -> Any:
    """Resolve ``value`` against ``ctx``, descending into dicts and lists"""
    if isinstance(value, Resolvable):
        out = value.resolve(ctx)
        while isinstance(out, Resolvable):
            out = out.resolve(ctx)
        return out
    if isinstance(value, TemplateString):
        return resolve_template(str(value), ctx)
    if isinstance(value, dict):
        return {k: resolve_value(v, ctx) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, ctx) for v in value]
    if inspect.isfunction(value) or inspect.ismethod(value):
        # body readers receive the decoded body of the current response
        try:
            return value(ctx.current_body)
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(f"body reader failed: {e}", cause=e) from e
    return value


_VAR_MARKER = "{$"


def resolve_template(s: str, ctx: "Context") -> str:
    """Substitute ``{$name}`` markers with variables from the context"""
    if _VAR_MARKER not in s:
        return s
    out: List[str] = []
    i = 0
    while i < len(s):
        j = s.find(_VAR_MARKER, i)
        if j < 0:
            out.append(s[i:])
            break
        backslashes = 0
        k = j - 1
        while k >= i and s[k] == "\\":
            backslashes += 1
            k -= 1
        out.append(s[i:j - backslashes])
        if backslashes % 2 == 1:
            out.append("\\" * (backslashes - 1))
            out.append(_VAR_MARKER)
            i = j + 2
            continue
        out.append("\\" * backslashes)
        end = s.find("}", j + 2)
        if end < 0:
            raise ResolutionError(f"unterminated variable marker in {s!r}")
        name = s[j + 2:end]
        if name not in ctx.vars:
            raise ResolutionError(f"unknown variable {name!r}")
        out.append(_to_text(ctx.vars[name]))
        i = end + 1
    return "".join(out)


def _to_text(v: Any) -> str:
    if isinstance(v, str):
        return v
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    if isinstance(v, (dict, list)):
        return json.dumps(v)
    if v is None:
        return ""
    return str(v)


def json_path(v: Any, path: str, ctx: Optional["Context"] = None) -> Any:
    """
    Descend into ``v`` by ``path``.

    Segments are dot separated. Mappings accept keys and ``LEN``; lists accept
    ``LEN``, ``FIRST``, ``LAST`` and decimal indexes (negative counts from the
    end), at any depth. Strings and bytes holding
    JSON are parsed first.
    """
    if isinstance(v, (str, bytes, bytearray)):
        v = _parse_json_text(v, path, ctx)
    if v is None:
        raise ResolutionError(f"json path {path!r} into nil")
    if isinstance(v, (dict, list, tuple)):
        if path in ("", "."):
            return v
        cur: Any = v
        for part in path.split("."):
            if isinstance(cur, dict) and part in cur:
                cur = cur[part]
            elif isinstance(cur, dict) and part.upper() == LEN:
                cur = len(cur)
            elif isinstance(cur, (list, tuple)):
                cur = _index_list(list(cur), part, path)
            else:
                raise ResolutionError(f"json path {path!r} does not exist")
        return cur
    raise ResolutionError(f"json path {path!r} into non object/array")


def _index_list(lst: List[Any], key: str, path: str) -> Any:
    upper = key.upper()
    if upper in ("", "."):
        return lst
    if upper == LEN:
        return len(lst)
    if upper in (FIRST, LAST):
        if not lst:
            raise ResolutionError(f"json path {path!r} into empty array")
        return lst[0] if upper == FIRST else lst[-1]
    try:
        i = int(key)
    except ValueError:
        raise ResolutionError(f"json path {path!r} invalid array index") from None
    if not lst:
        raise ResolutionError(f"json path {path!r} into empty array")
    if -len(lst) <= i < len(lst):
        return lst[i]
    raise ResolutionError(f"json path {path!r} array index out of range")


def _parse_json_text(raw: Any, path: str, ctx: Optional["Context"]) -> Any:
    text = bytes(raw).decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    cache = ctx.json_cache if ctx is not None else None
    if cache is not None and text in cache:
        return cache[text]
    try:
        parsed = json.loads(text)
    except ValueError:
        raise ResolutionError(f"json path {path!r} into non object/array") from None
    if cache is not None:
        cache[text] = parsed
    return parsed


def stringify_value(v: Any) -> str:
    """Render an operand for messages"""
    if v is None:
        return "null"
    if isinstance(v, str):
        return json.dumps(v)
    if isinstance(v, Resolvable):
        return str(v)
    return str(v)


def jsonify(v: Any) -> Any:
    """Convert dataclasses and Decimals into JSON-compatible values"""
    if dataclasses.is_dataclass(v) and not isinstance(v, type):
        return {k: jsonify(x) for k, x in dataclasses.asdict(v).items()}
    if isinstance(v, dict):
        return {str(k): jsonify(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [jsonify(x) for x in v]
    if isinstance(v, Decimal):
        return float(v)
    return v


# ==================== Variables ====================

class Var(Resolvable):
    """A named variable; unset variables are an error"""

    def __init__(self, name: str):
        self.name = name

    def resolve(self, ctx: "Context") -> Any:
        if self.name in ctx.vars:
            return ctx.vars[self.name]
        raise ResolutionError(f"unknown variable {self.name!r}")

    def __str__(self) -> str:
        return f"Var({self.name})"


class DefaultVar(Resolvable):
    """A named variable falling back to ``default`` when unset"""

    def __init__(self, name: str, default: Any = None):
        self.name = name
        self.default = default

    def resolve(self, ctx: "Context") -> Any:
        if self.name in ctx.vars:
            return ctx.vars[self.name]
        return resolve_value(self.default, ctx)

    def __str__(self) -> str:
        return f"DefaultVar({self.name})"


class Env(Resolvable):
    """An OS environment variable (empty string when unset)"""

    def __init__(self, name: str):
        self.name = name

    def resolve(self, ctx: "Context") -> Any:
        return os.environ.get(self.name, "")

    def __str__(self) -> str:
        return f"Env({self.name})"


# ==================== Current response ====================

class StatusCode(Resolvable):
    def resolve(self, ctx: "Context") -> Any:
        resp = ctx.current_response
        if resp is None:
            raise ResolutionError("no current response for status code")
        return resp.status_code

    def __str__(self) -> str:
        return "StatusCode"


class BodyValue(Resolvable):
    def resolve(self, ctx: "Context") -> Any:
        return ctx.current_body

    def __str__(self) -> str:
        return "Body"


class ResponseHeaders(Resolvable):
    def resolve(self, ctx: "Context") -> Any:
        resp = ctx.current_response
        if resp is None:
            raise ResolutionError("no current response for headers")
        return {k: v for k, v in resp.headers.items()}

    def __str__(self) -> str:
        return "Headers"


Status = StatusCode()
Body = BodyValue()
Headers = ResponseHeaders()


class Header(Resolvable):
    """First value of a response header (case-insensitive), None when absent"""

    def __init__(self, name: str):
        self.name = name

    def resolve(self, ctx: "Context") -> Any:
        resp = ctx.current_response
        if resp is None:
            raise ResolutionError(f"no current response for header {self.name!r}")
        return resp.headers.get(self.name)

    def __str__(self) -> str:
        return f"Header({self.name!r})"


class BodyPath(Resolvable):
    def __init__(self, path: str):
        self.path = path

    def resolve(self, ctx: "Context") -> Any:
        return json_path(ctx.current_body, self.path, ctx)

    def __str__(self) -> str:
        return f"Body.{self.path}"


# ==================== Traversal ====================

class JsonPath(Resolvable):
    def __init__(self, value: Any, path: Any):
        self.value = value
        self.path = path

    def resolve(self, ctx: "Context") -> Any:
        v = resolve_value(self.value, ctx)
        return json_path(v, str(resolve_value(self.path, ctx)), ctx)

    def __str__(self) -> str:
        return f"JsonPath({_describe(self.value)}, {self.path!r})"


class JsonTraverse(Resolvable):
    """Successive JsonPath steps; errors name the composed path"""

    def __init__(self, value: Any, *keys: Any):
        self.value = value
        self.keys = keys

    def resolve(self, ctx: "Context") -> Any:
        cur = resolve_value(self.value, ctx)
        walked: List[str] = []
        for key in self.keys:
            key = str(resolve_value(key, ctx))
            walked.append(key)
            try:
                cur = json_path(cur, key, ctx)
            except ResolutionError as e:
                raise ResolutionError(f"json traverse {'.'.join(walked)!r}: {e.msg}", cause=e) from e
        return cur

    def __str__(self) -> str:
        return f"JsonTraverse({_describe(self.value)}, {', '.join(repr(k) for k in self.keys)})"


class Jsonify(Resolvable):
    """Parse a resolved str/bytes as JSON; other values pass through"""

    def __init__(self, value: Any):
        self.value = value

    def resolve(self, ctx: "Context") -> Any:
        v = resolve_value(self.value, ctx)
        if isinstance(v, (str, bytes, bytearray)):
            try:
                return json.loads(v)
            except ValueError as e:
                raise ResolutionError(f"cannot jsonify: {e}", cause=e) from e
        return v

    def __str__(self) -> str:
        return f"Jsonify({_describe(self.value)})"


class Len(Resolvable):
    """Length of the resolved value, -1 when it has none"""

    def __init__(self, value: Any):
        self.value = value

    def resolve(self, ctx: "Context") -> Any:
        v = resolve_value(self.value, ctx)
        try:
            return len(v)
        except TypeError:
            return -1

    def __str__(self) -> str:
        return f"Len({_describe(self.value)})"


class Nth(Resolvable):
    """Indexed element of a resolved sequence, None when empty"""

    def __init__(self, value: Any, index: int):
        self.value = value
        self.index = index

    def resolve(self, ctx: "Context") -> Any:
        v = resolve_value(self.value, ctx)
        if v is None:
            return None
        if not isinstance(v, (list, tuple, str)):
            raise ResolutionError(f"cannot index into {type(v).__name__}")
        if len(v) == 0:
            return None
        try:
            return v[self.index]
        except IndexError:
            raise ResolutionError(f"index {self.index} out of range (len {len(v)})") from None

    def __str__(self) -> str:
        return f"Nth({_describe(self.value)}, {self.index})"


class First(Nth):
    def __init__(self, value: Any):
        super().__init__(value, 0)

    def __str__(self) -> str:
        return f"First({_describe(self.value)})"


class Last(Nth):
    def __init__(self, value: Any):
        super().__init__(value, -1)

    def __str__(self) -> str:
        return f"Last({_describe(self.value)})"


# ==================== Logic ====================

class And(Resolvable):
    def __init__(self, *values: Any):
        self.values = values

    def resolve(self, ctx: "Context") -> Any:
        return all(_truthy(resolve_value(v, ctx)) for v in self.values)

    def __str__(self) -> str:
        return f"And({', '.join(_describe(v) for v in self.values)})"


class Or(Resolvable):
    def __init__(self, *values: Any):
        self.values = values

    def resolve(self, ctx: "Context") -> Any:
        return any(_truthy(resolve_value(v, ctx)) for v in self.values)

    def __str__(self) -> str:
        return f"Or({', '.join(_describe(v) for v in self.values)})"


def _truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    raise ResolutionError(f"expected bool, got {type(v).__name__}")


# ==================== Database ====================

_SELECT_RE = re.compile(r"^\s*SELECT\b", re.I)


class QueryRows(Resolvable):
    """Rows of a SELECT as a list of dicts"""

    def __init__(self, query: str, *args: Any, db: str = ""):
        if not _SELECT_RE.match(query):
            raise DeclarationError(f"query must start with SELECT: {query!r}")
        self.query = query
        self.args = args
        self.db = db

    def _fetch(self, ctx: "Context") -> List[Dict[str, Any]]:
        conn = ctx.db(self.db)
        args = [resolve_value(a, ctx) for a in self.args]
        cur = conn.cursor()
        try:
            cur.execute(self.query, args)
            cols = [d[0] for d in (cur.description or [])]
            return [dict(zip(cols, row)) for row in cur.fetchall()]
        except Exception as e:
            raise ResolutionError(f"query failed: {e}", cause=e) from e
        finally:
            cur.close()

    def resolve(self, ctx: "Context") -> Any:
        return self._fetch(ctx)

    def __str__(self) -> str:
        return f"QueryRows({self.query!r})"


class Query(QueryRows):
    """First column of the first row of a SELECT, None when no rows"""

    def resolve(self, ctx: "Context") -> Any:
        rows = self._fetch(ctx)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    def __str__(self) -> str:
        return f"Query({self.query!r})"


# ==================== Side calls ====================

class ApiCall(Resolvable):
    """An out-of-band call to the API under test; yields status, body and headers"""

    def __init__(self, method: str, url: Any, body: Any = None, headers: Optional[Dict[str, Any]] = None):
        self.method = method.upper()
        self.url = url
        self.body = body
        self.headers = headers or {}

    def resolve(self, ctx: "Context") -> Any:
        url = str(resolve_value(self.url, ctx))
        headers = {k: str(resolve_value(v, ctx)) for k, v in self.headers.items()}
        body = resolve_value(self.body, ctx)
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = jsonify(body)
        request = httpx.Request(self.method, ctx.host + url, **kwargs)
        try:
            resp = ctx.http_do.do(request)
        except Exception as e:
            raise ResolutionError(f"api call {self.method} {url} failed: {e}", cause=e) from e
        return {
            "status": resp.status_code,
            "body": decode_body(resp.content),
            "headers": {k: v for k, v in resp.headers.items()},
        }

    def __str__(self) -> str:
        return f"ApiCall({self.method} {self.url})"


def decode_body(content: bytes) -> Any:
    """Empty body is None; JSON when parseable, otherwise text"""
    if not content:
        return None
    try:
        return json.loads(content)
    except ValueError:
        return content.decode("utf-8", errors="replace")


# ==================== Listener snapshots ====================

class Events(Resolvable):
    """Snapshot copy of a listener's captured events"""

    def __init__(self, name: str):
        self.name = name

    def resolve(self, ctx: "Context") -> Any:
        return ctx.events(self.name)

    def __str__(self) -> str:
        return f"Events({self.name!r})"


class EventsCount(Resolvable):
    def __init__(self, name: str):
        self.name = name

    def resolve(self, ctx: "Context") -> Any:
        return ctx.events_count(self.name)

    def __str__(self) -> str:
        return f"EventsCount({self.name!r})"


def _describe(v: Any) -> str:
    if isinstance(v, Resolvable):
        return str(v)
    return repr(v)


def resolve_all(values: Sequence[Any], ctx: "Context") -> List[Any]:
    return [resolve_value(v, ctx) for v in values]
