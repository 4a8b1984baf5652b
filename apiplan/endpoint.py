# apiplan/endpoint.py
"""
Declaration tree: endpoints, methods and their flattening.

Endpoints and methods are immutable. Every builder on Method returns a new
Method, so a partially built method can be shared and extended safely:

    base = Get("list pets").assert_ok()
    Endpoint("/api/pets", "pets",
        base,
        base.query_param("limit", 1).assert_len(Body, 1),
    )
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from . import expectations as ex
from .auth import Auth, AuthScheme
from .errors import DeclarationError
from .framing import Frame
from .hooks import CaptureFunc, Hook, SetVar, Wait, When

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{[^/{}]*\}")
_SLASHES_RE = re.compile(r"/{2,}")


def join_path(*parts: str) -> str:
    """Concatenate path segments, collapsing adjacent slashes"""
    joined = "/".join(p for p in parts if p)
    joined = _SLASHES_RE.sub("/", joined)
    if not joined.startswith("/"):
        joined = "/" + joined
    return joined


def placeholder_count(url: str) -> int:
    return len(PLACEHOLDER_RE.findall(url))


# ==================== Method ====================

@dataclass(frozen=True)
class Method:
    """An HTTP verb bound to an endpoint, with its hooks and expectations"""
    verb: str
    desc: str = ""
    path_params: Tuple[Any, ...] = ()
    query: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    headers: Tuple[Tuple[str, Any], ...] = ()
    body: Any = None
    has_body: bool = False
    before: Tuple[Hook, ...] = ()
    after: Tuple[Hook, ...] = ()
    expectations: Tuple[ex.Expectation, ...] = ()
    authorizers: Tuple[Callable[..., Any], ...] = ()
    set_cookies: Tuple[Tuple[str, Any], ...] = ()
    use_cookies: Tuple[str, ...] = ()
    store_cookies: Tuple[str, ...] = ()
    conditions: Tuple[Tuple[Any, bool], ...] = ()
    fail_fast_: bool = False
    request_marshaler: Optional[Callable[[Any], Any]] = None
    response_unmarshaler: Optional[Callable[[bytes], Any]] = None
    frame: Optional[Frame] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "verb", self.verb.upper())
        if self.frame is None:
            object.__setattr__(self, "frame", Frame.here())

    def _with(self, **changes: Any) -> "Method":
        return dataclasses.replace(self, **changes)

    @property
    def name(self) -> str:
        return f"{self.verb} {self.desc}".strip()

    # ---- request ----

    def path_param(self, *values: Any) -> "Method":
        return self._with(path_params=self.path_params + values)

    def query_param(self, name: str, *values: Any) -> "Method":
        return self._with(query=self.query + ((name, values),))

    def request_header(self, name: str, value: Any) -> "Method":
        return self._with(headers=self.headers + ((name, value),))

    def auth_header(self, scheme: Union[AuthScheme, str], value: Any) -> "Method":
        """Authorization header of ``scheme`` and a (possibly resolvable) credential"""
        return self.request_header("Authorization", Auth(scheme, value))

    def request_body(self, body: Any) -> "Method":
        return self._with(body=body, has_body=True)

    def authorize(self, fn: Callable[..., Any]) -> "Method":
        """``fn(ctx, request)`` may mutate the request or return a replacement"""
        return self._with(authorizers=self.authorizers + (fn,))

    def set_cookie(self, name: str, value: Any) -> "Method":
        return self._with(set_cookies=self.set_cookies + ((name, value),))

    def use_cookie(self, name: str) -> "Method":
        """Send a cookie previously stored with ``store_cookie``"""
        return self._with(use_cookies=self.use_cookies + (name,))

    def store_cookie(self, name: str) -> "Method":
        """Keep a response cookie for later ``use_cookie``"""
        return self._with(store_cookies=self.store_cookies + (name,))

    def request_marshal(self, fn: Callable[[Any], Any]) -> "Method":
        return self._with(request_marshaler=fn)

    def response_unmarshal(self, fn: Callable[[bytes], Any]) -> "Method":
        return self._with(response_unmarshaler=fn)

    # ---- flow ----

    def do(self, *ops: Any) -> "Method":
        """Append hooks and expectations (lists are flattened)"""
        before = list(self.before)
        after = list(self.after)
        exps = list(self.expectations)
        for op in _flatten_ops(ops):
            if isinstance(op, Hook):
                (before if op.when == When.BEFORE else after).append(op)
            elif isinstance(op, ex.Expectation):
                exps.append(op)
            else:
                raise DeclarationError(f"unsupported method operation type {type(op).__name__}", frame=self.frame)
        return self._with(before=tuple(before), after=tuple(after), expectations=tuple(exps))

    capture = do

    def set_var(self, when: When, name: str, value: Any) -> "Method":
        return self.do(SetVar(when, name, value))

    def wait(self, when: When, ms: int) -> "Method":
        return self.do(Wait(when, ms))

    def capture_func(self, when: When, fn: Callable[["Context"], Any]) -> "Method":
        return self.do(CaptureFunc(when, fn))

    def fail_fast(self) -> "Method":
        """Stop evaluating expectations at the first unmet one"""
        return self._with(fail_fast_=True)

    def if_(self, condition: Any) -> "Method":
        """Run only when ``condition`` resolves truthy"""
        return self._with(conditions=self.conditions + ((condition, True),))

    def if_not(self, condition: Any) -> "Method":
        return self._with(conditions=self.conditions + ((condition, False),))

    # ---- expectations ----

    def expect(self, *exps: ex.Expectation) -> "Method":
        return self.do(*exps)

    def _a(self, exp: ex.Expectation) -> "Method":
        return self.do(exp)

    def _r(self, exp: ex.Expectation) -> "Method":
        return self.do(exp.required())

    def assert_ok(self) -> "Method":
        return self._a(ex.ExpectOK())

    def require_ok(self) -> "Method":
        return self._r(ex.ExpectOK())

    def assert_created(self) -> "Method":
        return self._a(ex.ExpectCreated())

    def require_created(self) -> "Method":
        return self._r(ex.ExpectCreated())

    def assert_accepted(self) -> "Method":
        return self._a(ex.ExpectAccepted())

    def assert_no_content(self) -> "Method":
        return self._a(ex.ExpectNoContent())

    def require_no_content(self) -> "Method":
        return self._r(ex.ExpectNoContent())

    def assert_bad_request(self) -> "Method":
        return self._a(ex.ExpectBadRequest())

    def assert_unauthorized(self) -> "Method":
        return self._a(ex.ExpectUnauthorized())

    def assert_forbidden(self) -> "Method":
        return self._a(ex.ExpectForbidden())

    def assert_not_found(self) -> "Method":
        return self._a(ex.ExpectNotFound())

    def require_not_found(self) -> "Method":
        return self._r(ex.ExpectNotFound())

    def assert_conflict(self) -> "Method":
        return self._a(ex.ExpectConflict())

    def assert_gone(self) -> "Method":
        return self._a(ex.ExpectGone())

    def assert_unprocessable_entity(self) -> "Method":
        return self._a(ex.ExpectUnprocessableEntity())

    def assert_status(self, status: Any) -> "Method":
        return self._a(ex.ExpectStatus(status))

    def require_status(self, status: Any) -> "Method":
        return self._r(ex.ExpectStatus(status))

    def assert_equal(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectEqual(v1, v2))

    def require_equal(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectEqual(v1, v2))

    def assert_not_equal(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectNotEqual(v1, v2))

    def require_not_equal(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectNotEqual(v1, v2))

    def assert_greater_than(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectGreaterThan(v1, v2))

    def require_greater_than(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectGreaterThan(v1, v2))

    def assert_greater_or_equal(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectGreaterThanOrEqual(v1, v2))

    def require_greater_or_equal(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectGreaterThanOrEqual(v1, v2))

    def assert_less_than(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectLessThan(v1, v2))

    def require_less_than(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectLessThan(v1, v2))

    def assert_less_or_equal(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectLessThanOrEqual(v1, v2))

    def require_less_or_equal(self, v1: Any, v2: Any) -> "Method":
        return self._r(ex.ExpectLessThanOrEqual(v1, v2))

    def assert_not_less_than(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectNotLessThan(v1, v2))

    def assert_not_greater_than(self, v1: Any, v2: Any) -> "Method":
        return self._a(ex.ExpectNotGreaterThan(v1, v2))

    def assert_len(self, value: Any, length: int) -> "Method":
        return self._a(ex.ExpectLen(value, length))

    def require_len(self, value: Any, length: int) -> "Method":
        return self._r(ex.ExpectLen(value, length))

    def assert_contains(self, value: Any, item: Any) -> "Method":
        return self._a(ex.ExpectContains(value, item))

    def require_contains(self, value: Any, item: Any) -> "Method":
        return self._r(ex.ExpectContains(value, item))

    def assert_not_contains(self, value: Any, item: Any) -> "Method":
        return self._a(ex.ExpectNotContains(value, item))

    def assert_matches(self, pattern: str, value: Any) -> "Method":
        return self._a(ex.ExpectMatch(value, pattern))

    def require_matches(self, pattern: str, value: Any) -> "Method":
        return self._r(ex.ExpectMatch(value, pattern))

    def assert_type(self, value: Any, typ: Any) -> "Method":
        return self._a(ex.ExpectType(value, typ))

    def assert_nil(self, value: Any) -> "Method":
        return self._a(ex.ExpectNil(value))

    def assert_not_nil(self, value: Any) -> "Method":
        return self._a(ex.ExpectNotNil(value))

    def require_not_nil(self, value: Any) -> "Method":
        return self._r(ex.ExpectNotNil(value))

    def assert_has_properties(self, value: Any, *names: str) -> "Method":
        return self._a(ex.ExpectHasProperties(value, *names))

    def assert_only_has_properties(self, value: Any, *names: str) -> "Method":
        return self._a(ex.ExpectOnlyHasProperties(value, *names))

    def assert_header(self, name: str, expected: Any) -> "Method":
        return self._a(ex.ExpectHeader(name, expected))

    def require_header(self, name: str, expected: Any) -> "Method":
        return self._r(ex.ExpectHeader(name, expected))

    def assert_var_set(self, name: Any) -> "Method":
        return self._a(ex.ExpectVarSet(name))

    def assert_matches_schema(self, value: Any, schema: dict) -> "Method":
        return self._a(ex.ExpectMatchesSchema(value, schema))

    def require_matches_schema(self, value: Any, schema: dict) -> "Method":
        return self._r(ex.ExpectMatchesSchema(value, schema))

    def assert_func(self, fn: Callable[["Context"], Any]) -> "Method":
        return self._a(ex.ExpectationFunc(fn))

    def require_func(self, fn: Callable[["Context"], Any]) -> "Method":
        return self._r(ex.ExpectationFunc(fn))

    def fail(self, msg: str) -> "Method":
        return self._a(ex.Fail(msg))


def _verb(verb: str) -> Callable[..., Method]:
    def make(desc: str = "", *ops: Any) -> Method:
        m = Method(verb, desc, frame=Frame.here())
        return m.do(*ops) if ops else m

    make.__name__ = verb.capitalize()
    make.__doc__ = f"A {verb} method"
    return make


Get = _verb("GET")
Head = _verb("HEAD")
Post = _verb("POST")
Put = _verb("PUT")
Patch = _verb("PATCH")
Delete = _verb("DELETE")
Options = _verb("OPTIONS")


def _flatten_ops(ops: Iterable[Any]) -> Iterator[Any]:
    for op in ops:
        if isinstance(op, (list, tuple)):
            yield from _flatten_ops(op)
        elif op is not None:
            yield op


# ==================== Endpoint ====================

class Endpoint:
    """A path segment with methods, child endpoints and endpoint-level hooks"""

    def __init__(self, url: str, desc: str = "", *ops: Any):
        self.url = url
        self.desc = desc
        self.frame = Frame.here()
        methods: List[Method] = []
        subs: List[Endpoint] = []
        before: List[Hook] = []
        after: List[Hook] = []
        for op in _flatten_ops(ops):
            if isinstance(op, Method):
                methods.append(op)
            elif isinstance(op, Endpoint):
                subs.append(op)
            elif isinstance(op, Hook):
                (before if op.when == When.BEFORE else after).append(op)
            else:
                raise DeclarationError(f"unsupported endpoint operation type {type(op).__name__}", frame=self.frame)
        self.methods: Tuple[Method, ...] = tuple(methods)
        self.subs: Tuple[Endpoint, ...] = tuple(subs)
        self.before: Tuple[Hook, ...] = tuple(before)
        self.after: Tuple[Hook, ...] = tuple(after)

    def __repr__(self) -> str:
        return f"Endpoint({self.url!r}, methods={len(self.methods)}, subs={len(self.subs)})"

    def run(self, ctx: "Context", prefix: str = "") -> None:
        """Before hooks, methods, child endpoints, then after hooks"""
        from .http_driver import MethodRun

        url = join_path(prefix, self.url)
        ctx.current_endpoint = url
        proceed = True
        for i, h in enumerate(self.before):
            if not ctx.run(f"Before[{i}]", _hook_runner(h)):
                proceed = False
                break
        if proceed:
            for m in self.methods:
                if ctx.stopped:
                    break
                unit = ExecutionUnit(url=url, method=m, frame=m.frame)
                ctx.run(m.verb, lambda c, u=unit: MethodRun(c, u).run())
            for sub in self.subs:
                if ctx.stopped:
                    break
                ctx.run(sub.url, lambda c, s=sub: s.run(c, url))
        ctx.current_endpoint = url
        for i, h in enumerate(self.after):
            ctx.run(f"After[{i}]", _hook_runner(h))


def _hook_runner(h: Hook) -> Callable[["Context"], None]:
    def run(ctx: "Context") -> None:
        ctx.set_current_unit(None)
        h.execute(ctx)

    return run


# ==================== Flattening ====================

@dataclass(frozen=True)
class ExecutionUnit:
    """One method at its absolute URL template"""
    url: str
    method: Method
    frame: Optional[Frame] = field(default=None, compare=False)

    @property
    def verb(self) -> str:
        return self.method.verb


def flatten(tree: Sequence[Union[Endpoint, ExecutionUnit]], prefix: str = "") -> List[ExecutionUnit]:
    """
    Produce execution units in source order. Already flattened units pass
    through unchanged, so flattening is idempotent.
    """
    out: List[ExecutionUnit] = []
    for node in tree:
        if isinstance(node, ExecutionUnit):
            out.append(node)
            continue
        if not isinstance(node, Endpoint):
            raise DeclarationError(f"unsupported plan node type {type(node).__name__}")
        url = join_path(prefix, node.url)
        want = placeholder_count(url)
        for m in node.methods:
            if len(m.path_params) != want:
                raise DeclarationError(
                    f"{m.verb} {url}: {want} path placeholder(s) but {len(m.path_params)} path param(s)",
                    frame=m.frame,
                )
            out.append(ExecutionUnit(url=url, method=m, frame=m.frame))
        out.extend(flatten(node.subs, url))
    return out

