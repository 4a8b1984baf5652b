# apiplan/expectations.py
"""
Expectations (assertions and requirements) evaluated after the HTTP call.

``met(ctx)`` returns None when satisfied, an UnmetError describing the
mismatch otherwise, and raises ApiPlanError when an operand cannot be
resolved. ``must=True`` makes an expectation a requirement: when unmet the
method stops evaluating and goes straight to its after hooks.
"""

from __future__ import annotations

import copy
import json
import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from enum import Enum
from http import HTTPStatus
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional, Tuple, Union

import jsonschema

from .errors import ApiPlanError, OperandValue, ResolutionError, UnmetError
from .framing import Frame
from .resolvables import jsonify, resolve_value, stringify_value

if TYPE_CHECKING:
    from .context import Context


class Expectation(ABC):
    """Base for all assertions/requirements"""

    def __init__(self, name: str = "", must: bool = False, frame: Optional[Frame] = None):
        self._name = name
        self.must = must
        self.frame = frame or Frame.here()

    @property
    def name(self) -> str:
        return self._name or type(self).__name__

    @abstractmethod
    def met(self, ctx: "Context") -> Optional[UnmetError]:
        ...

    def required(self) -> "Expectation":
        """A copy of this expectation with ``must`` set"""
        c = copy.copy(self)
        c.must = True
        return c

    def _unmet(self, msg: str, expected: Any = None, actual: Any = None, **kw: Any) -> UnmetError:
        return UnmetError(
            msg,
            name=self.name,
            expected=expected if isinstance(expected, OperandValue) else OperandValue(resolved=expected),
            actual=actual if isinstance(actual, OperandValue) else OperandValue(resolved=actual),
            frame=self.frame,
            **kw,
        )

    def _resolve(self, value: Any, ctx: "Context", what: str) -> Any:
        try:
            return resolve_value(value, ctx)
        except ApiPlanError as e:
            raise ResolutionError(f"{self.name} failed to resolve {what}: {e.msg}", cause=e, frame=self.frame) from e

    def __repr__(self) -> str:
        return f"{'Require' if self.must else 'Assert'}:{self.name}"


# ==================== Status ====================

class ExpectStatus(Expectation):
    """Response status equals ``status`` (int or resolvable)"""

    def __init__(self, status: Any, must: bool = False):
        super().__init__(f"ExpectStatus({status})", must)
        self.status = status

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        resp = ctx.current_response
        if resp is None:
            raise ResolutionError("no current response", frame=self.frame)
        expected = self._resolve(self.status, ctx, "status")
        try:
            code = int(expected)
        except (TypeError, ValueError):
            raise ResolutionError(f"invalid status code {expected!r}", frame=self.frame) from None
        if resp.status_code == code:
            return None
        return self._unmet(
            f"expected status code {code} {json.dumps(_status_text(code))}",
            expected=OperandValue(original=self.status, resolved=code),
            actual=OperandValue(resolved=resp.status_code),
        )


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


def _fixed_status(cls_name: str, code: int) -> type:
    def __init__(self, must: bool = False):
        ExpectStatus.__init__(self, code, must)
        self._name = cls_name

    return type(cls_name, (ExpectStatus,), {"__init__": __init__, "__doc__": f"Status is {code}"})


ExpectOK = _fixed_status("ExpectOK", 200)
ExpectCreated = _fixed_status("ExpectCreated", 201)
ExpectAccepted = _fixed_status("ExpectAccepted", 202)
ExpectNoContent = _fixed_status("ExpectNoContent", 204)
ExpectBadRequest = _fixed_status("ExpectBadRequest", 400)
ExpectUnauthorized = _fixed_status("ExpectUnauthorized", 401)
ExpectForbidden = _fixed_status("ExpectForbidden", 403)
ExpectNotFound = _fixed_status("ExpectNotFound", 404)
ExpectConflict = _fixed_status("ExpectConflict", 409)
ExpectGone = _fixed_status("ExpectGone", 410)
ExpectUnprocessableEntity = _fixed_status("ExpectUnprocessableEntity", 422)


# ==================== Comparators ====================

class Comp(str, Enum):
    EQUAL = "=="
    LESS = "<"
    GREATER = ">"
    LESS_EQUAL = "<="
    GREATER_EQUAL = ">="


_NUMBER = (int, float, Decimal)


def _is_number(v: Any) -> bool:
    return isinstance(v, _NUMBER) and not isinstance(v, bool)


def _to_decimal(v: Any) -> Decimal:
    if isinstance(v, Decimal):
        return v
    if isinstance(v, float):
        return Decimal(repr(v))
    return Decimal(v)


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _cmp_numbers(a: Decimal, b: Decimal, equality: bool) -> Optional[int]:
    # NaN is unequal to everything and has no order
    if a.is_nan() or b.is_nan():
        return -1 if equality else None
    return _cmp(a, b)


def _is_nan(v: Any) -> bool:
    return _is_number(v) and _to_decimal(v).is_nan()


def _coerce_numeric_string(s: str, side: OperandValue) -> Optional[Decimal]:
    try:
        d = Decimal(s.strip())
    except InvalidOperation as e:
        side.coercion_error = e
        return None
    if not d.is_finite():
        side.coercion_error = ValueError(f"not a finite number: {s!r}")
        return None
    side.coerced = d
    return d


def _bool_matches_number(b: bool, n: Any) -> bool:
    return b == (n != 0)


def values_equal(a: Any, b: Any) -> bool:
    """Deep value equality: numbers by value, dicts key-wise, lists in order"""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) and isinstance(b, bool):
        return a == b
    if _is_number(a) and _is_number(b):
        return _to_decimal(a) == _to_decimal(b)
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


def compare(left: OperandValue, right: OperandValue, equality: bool) -> Optional[int]:
    """
    Compare two resolved operands; returns -1/0/1, or None when the pair is
    incomparable for the requested kind of comparison. Coercions are
    recorded on the operands.
    """
    a, b = left.resolved, right.resolved
    if isinstance(a, bool) or isinstance(b, bool):
        if not equality:
            return None
        if isinstance(a, bool) and isinstance(b, bool):
            return 0 if a == b else -1
        if isinstance(a, bool) and _is_number(b):
            return 0 if _bool_matches_number(a, b) else -1
        if isinstance(b, bool) and _is_number(a):
            return 0 if _bool_matches_number(b, a) else -1
        if isinstance(a, str):
            left.coerced, right.coerced = a.lower(), str(b).lower()
            return 0 if left.coerced == right.coerced else -1
        if isinstance(b, str):
            left.coerced, right.coerced = str(a).lower(), b.lower()
            return 0 if left.coerced == right.coerced else -1
        return None
    if _is_number(a) and _is_number(b):
        return _cmp_numbers(_to_decimal(a), _to_decimal(b), equality)
    if isinstance(a, str) and isinstance(b, str):
        return _cmp(a, b)
    if isinstance(a, str) and _is_number(b):
        d = _coerce_numeric_string(a, left)
        return None if d is None else _cmp_numbers(d, _to_decimal(b), equality)
    if _is_number(a) and isinstance(b, str):
        d = _coerce_numeric_string(b, right)
        return None if d is None else _cmp_numbers(_to_decimal(a), d, equality)
    if equality and isinstance(a, (dict, list, tuple)) and isinstance(b, (dict, list, tuple)):
        return 0 if values_equal(a, b) else -1
    return None


class Comparator(Expectation):
    """Binary comparison between two (possibly resolvable) operands"""

    def __init__(self, left: Any, right: Any, comp: Comp, negate: bool = False, must: bool = False, name: str = ""):
        super().__init__(name, must)
        self.left = left
        self.right = right
        self.comp = comp
        self.negate = negate

    @property
    def name(self) -> str:
        return self._name or self.comp_string()

    def comp_string(self) -> str:
        return f"NOT({self.comp.value})" if self.negate else self.comp.value

    def _comparison_unmet(self, msg: str, left: OperandValue, right: OperandValue) -> UnmetError:
        return UnmetError(
            msg or f"expected {self.comp_string()}",
            name=self.name,
            comparator=self.comp_string(),
            left=left,
            right=right,
            frame=self.frame,
        )

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        left = OperandValue(original=self.left)
        right = OperandValue(original=self.right)
        left.resolved = self._resolve(self.left, ctx, "value v1 (left)")
        right.resolved = self._resolve(self.right, ctx, "value v2 (right)")

        if left.resolved is None or right.resolved is None:
            if self.comp != Comp.EQUAL:
                return self._comparison_unmet("cannot compare with nil", left, right)
            both = left.resolved is None and right.resolved is None
            ok = both != self.negate
            return None if ok else self._comparison_unmet("", left, right)

        result = compare(left, right, equality=self.comp == Comp.EQUAL)
        if result is None:
            if _is_nan(left.resolved) or _is_nan(right.resolved):
                return self._comparison_unmet(f"cannot compare {self.comp_string()} with NaN", left, right)
            return self._comparison_unmet(
                f"cannot compare {self.comp_string()} on: v1 (left) = {type(left.resolved).__name__}, "
                f"v2 (right) = {type(right.resolved).__name__}",
                left, right,
            )
        ok = {
            Comp.EQUAL: result == 0,
            Comp.LESS: result < 0,
            Comp.GREATER: result > 0,
            Comp.LESS_EQUAL: result <= 0,
            Comp.GREATER_EQUAL: result >= 0,
        }[self.comp]
        if self.negate:
            ok = not ok
        return None if ok else self._comparison_unmet("", left, right)


class ExpectEqual(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.EQUAL, must=must)


class ExpectNotEqual(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.EQUAL, negate=True, must=must)


class ExpectLessThan(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.LESS, must=must)


class ExpectLessThanOrEqual(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.LESS_EQUAL, must=must)


class ExpectGreaterThan(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.GREATER, must=must)


class ExpectGreaterThanOrEqual(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.GREATER_EQUAL, must=must)


class ExpectNotLessThan(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.LESS, negate=True, must=must)


class ExpectNotGreaterThan(Comparator):
    def __init__(self, left: Any, right: Any, must: bool = False):
        super().__init__(left, right, Comp.GREATER, negate=True, must=must)


# ==================== Value expectations ====================

class ExpectLen(Expectation):
    def __init__(self, value: Any, length: int, must: bool = False):
        super().__init__(f"ExpectLen({length})", must)
        self.value = value
        self.length = length

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        try:
            n = len(v)
        except TypeError:
            return self._unmet(f"value has no length ({type(v).__name__})",
                               expected=self.length, actual=OperandValue(original=self.value, resolved=v))
        if n == self.length:
            return None
        return self._unmet(f"expected length {self.length}", expected=self.length,
                           actual=OperandValue(original=self.value, resolved=n))


def _contains(container: Any, item: Any) -> Optional[bool]:
    if isinstance(container, str):
        return str(item) in container if not isinstance(item, str) else item in container
    if isinstance(container, dict):
        return item in container
    if isinstance(container, (list, tuple)):
        return any(values_equal(x, item) for x in container)
    return None


class ExpectContains(Expectation):
    """Substring of a string, element of a list, or key of a mapping"""

    def __init__(self, value: Any, item: Any, must: bool = False, negate: bool = False):
        super().__init__("ExpectNotContains" if negate else "ExpectContains", must)
        self.value = value
        self.item = item
        self.negate = negate

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        item = self._resolve(self.item, ctx, "item")
        found = _contains(v, item)
        actual = OperandValue(original=self.value, resolved=v)
        if found is None:
            return self._unmet(f"cannot check contains on {type(v).__name__}", expected=item, actual=actual)
        if found != self.negate:
            return None
        verb = "not to contain" if self.negate else "to contain"
        return self._unmet(f"expected value {verb} {stringify_value(item)}", expected=item, actual=actual)


class ExpectNotContains(ExpectContains):
    def __init__(self, value: Any, item: Any, must: bool = False):
        super().__init__(value, item, must=must, negate=True)


class ExpectMatch(Expectation):
    """Regex search; non-string values are matched against their JSON text"""

    def __init__(self, value: Any, pattern: str, must: bool = False):
        super().__init__(f"ExpectMatch({pattern!r})", must)
        self.value = value
        self.pattern = re.compile(pattern)

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        text = v if isinstance(v, str) else json.dumps(jsonify(v))
        if self.pattern.search(text):
            return None
        return self._unmet(f"expected value to match {self.pattern.pattern!r}",
                           expected=self.pattern.pattern, actual=OperandValue(original=self.value, resolved=v))


_JSON_TYPES: Dict[str, Union[type, Tuple[type, ...]]] = {
    "string": str,
    "number": (int, float, Decimal),
    "integer": int,
    "boolean": bool,
    "bool": bool,
    "object": dict,
    "array": (list, tuple),
    "null": type(None),
}


class ExpectType(Expectation):
    """Resolved value is of a Python type or a JSON type name"""

    def __init__(self, value: Any, typ: Union[str, type, Tuple[type, ...]], must: bool = False):
        label = typ if isinstance(typ, str) else getattr(typ, "__name__", str(typ))
        super().__init__(f"ExpectType({label})", must)
        self.value = value
        self.typ = typ
        self.label = label

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        typ = _JSON_TYPES.get(self.typ, ()) if isinstance(self.typ, str) else self.typ
        ok = isinstance(v, typ)
        if ok and self.typ in ("number", "integer", int, float) and isinstance(v, bool):
            ok = False
        if ok:
            return None
        return self._unmet(f"expected type {self.label}", expected=self.label,
                           actual=OperandValue(original=self.value, resolved=type(v).__name__))


class ExpectNil(Expectation):
    def __init__(self, value: Any, must: bool = False, negate: bool = False):
        super().__init__("ExpectNotNil" if negate else "ExpectNil", must)
        self.value = value
        self.negate = negate

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        if (v is None) != self.negate:
            return None
        msg = "expected not nil" if self.negate else "expected nil"
        return self._unmet(msg, actual=OperandValue(original=self.value, resolved=v))


class ExpectNotNil(ExpectNil):
    def __init__(self, value: Any, must: bool = False):
        super().__init__(value, must=must, negate=True)


class ExpectHasProperties(Expectation):
    """Resolved mapping has (at least, or only) the named properties"""

    def __init__(self, value: Any, *names: str, must: bool = False, only: bool = False):
        super().__init__("ExpectOnlyHasProperties" if only else "ExpectHasProperties", must)
        self.value = value
        self.names = names
        self.only = only

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        actual = OperandValue(original=self.value, resolved=v)
        if not isinstance(v, dict):
            return self._unmet(f"expected object, got {type(v).__name__}", actual=actual)
        missing = [n for n in self.names if n not in v]
        if missing:
            return self._unmet(f"expected properties {missing}", expected=list(self.names), actual=actual)
        if self.only:
            extra = sorted(k for k in v if k not in self.names)
            if extra:
                return self._unmet(f"unexpected properties {extra}", expected=list(self.names), actual=actual)
        return None


class ExpectOnlyHasProperties(ExpectHasProperties):
    def __init__(self, value: Any, *names: str, must: bool = False):
        super().__init__(value, *names, must=must, only=True)


class ExpectHeader(Expectation):
    """Response header equals ``expected`` (case-insensitive name)"""

    def __init__(self, header: str, expected: Any, must: bool = False):
        super().__init__(f"ExpectHeader({header!r})", must)
        self.header = header
        self.expected = expected

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        resp = ctx.current_response
        if resp is None:
            raise ResolutionError("no current response", frame=self.frame)
        expected = self._resolve(self.expected, ctx, "expected")
        actual = resp.headers.get(self.header)
        if actual is not None and actual == str(expected):
            return None
        return self._unmet(f"expected header {self.header!r}", expected=expected,
                           actual=OperandValue(resolved=actual))


class ExpectVarSet(Expectation):
    def __init__(self, var: Any, must: bool = False):
        name = getattr(var, "name", var)
        super().__init__(f"ExpectVarSet({name!r})", must)
        self.var = str(name)

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        if self.var in ctx.vars:
            return None
        return self._unmet(f"expected var {self.var!r} to be set", expected=self.var)


class ExpectMatchesSchema(Expectation):
    """Resolved value validates against a JSON schema"""

    def __init__(self, value: Any, schema: Dict[str, Any], must: bool = False):
        super().__init__("ExpectMatchesSchema", must)
        self.value = value
        self.schema = schema

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        v = self._resolve(self.value, ctx, "value")
        try:
            jsonschema.validate(instance=jsonify(v), schema=self.schema)
        except jsonschema.ValidationError as e:
            return self._unmet(f"schema validation failed: {e.message}", expected=self.schema,
                               actual=OperandValue(original=self.value, resolved=v), cause=e)
        except jsonschema.SchemaError as e:
            raise ResolutionError(f"invalid schema: {e.message}", cause=e, frame=self.frame) from e
        return None


class Fail(Expectation):
    """Always unmet"""

    def __init__(self, msg: str, must: bool = False):
        super().__init__("Fail", must)
        self.msg = msg

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        return self._unmet(self.msg)


class ExpectationFunc(Expectation):
    """
    User-defined check. ``fn(ctx)`` returns None (met), a message or an
    UnmetError (unmet); anything it raises is a failure.
    """

    def __init__(self, fn: Callable[["Context"], Any], must: bool = False):
        super().__init__(f"ExpectationFunc({getattr(fn, '__name__', 'fn')})", must)
        self.fn = fn

    def met(self, ctx: "Context") -> Optional[UnmetError]:
        try:
            out = self.fn(ctx)
        except ApiPlanError:
            raise
        except Exception as e:
            raise ResolutionError(f"{self.name} raised: {e}", cause=e, frame=self.frame) from e
        if out is None or out is True:
            return None
        if isinstance(out, UnmetError):
            return out
        return self._unmet(str(out) if out is not False else "expectation func unmet")


def requires(expectations: Iterable[Expectation]) -> list:
    return [e.required() for e in expectations]
