# apiplan/hooks.py
"""
Before/after hooks.

A hook runs at one phase of a method (or endpoint) and either succeeds or
raises. Errors are wrapped into CaptureError carrying the hook's frame so the
report points at the declaration.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional, Sequence, Type, TypeVar

import httpx

from .errors import ApiPlanError, CaptureError, DeclarationError, OperandValue, wrap_capture_error
from .framing import Frame
from .harness import FailNow
from .listeners import SSEListener, register_listener, retention
from .resolvables import jsonify, resolve_value

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)


class When(str, Enum):
    """Phase of a hook relative to the HTTP call"""
    BEFORE = "before"
    AFTER = "after"


Before = When.BEFORE
After = When.AFTER


class Hook(ABC):
    """An operation run before or after a method's HTTP call"""

    def __init__(self, when: When, name: str = "", frame: Optional[Frame] = None):
        self.when = When(when)
        self._name = name
        self.frame = frame or Frame.here()

    @property
    def name(self) -> str:
        return self._name or type(self).__name__

    def __call__(self, ctx: "Context") -> None:
        self.run(ctx)

    @abstractmethod
    def run(self, ctx: "Context") -> None:
        """Run the hook; raise on failure"""

    def validate(self, ctx: "Context") -> None:
        """Check declaration preconditions once the suite is initialised"""

    def execute(self, ctx: "Context") -> None:
        """Run the hook, converting errors into CaptureError; FailNow passes through"""
        try:
            self.run(ctx)
        except (CaptureError, FailNow):
            raise
        except ApiPlanError as e:
            raise wrap_capture_error(e, self, e.msg) from e
        except Exception as e:
            raise wrap_capture_error(e, self) from e

    def __repr__(self) -> str:
        return f"{self.name}@{self.when.value}"


def stringify_message(v: Any) -> str:
    """
    Uniform rendering for message/value arguments of domain hooks:
    strings as-is, bytes as text, containers and dataclasses as JSON,
    anything else via str().
    """
    if isinstance(v, str):
        return v
    if isinstance(v, (bytes, bytearray)):
        return bytes(v).decode("utf-8", errors="replace")
    if isinstance(v, (dict, list, tuple)) or (dataclasses.is_dataclass(v) and not isinstance(v, type)):
        return json.dumps(jsonify(v))
    return str(v)


# ==================== Variables ====================

class SetVar(Hook):
    def __init__(self, when: When, name: str, value: Any):
        super().__init__(when, f"SetVar({name!r})")
        self.var = name
        self.value = value

    def run(self, ctx: "Context") -> None:
        try:
            ctx.set_var(self.var, resolve_value(self.value, ctx))
        except ApiPlanError as e:
            raise CaptureError(e.msg, self.name, cause=e, frame=self.frame,
                               values=[OperandValue(original=self.value)]) from e


class ClearVars(Hook):
    def __init__(self, when: When):
        super().__init__(when, "ClearVars")

    def run(self, ctx: "Context") -> None:
        ctx.clear_vars()


# ==================== Timing & callbacks ====================

class Wait(Hook):
    """Sleep for ``ms`` milliseconds; returns early when the run is cancelled"""

    def __init__(self, when: When, ms: int):
        super().__init__(when, f"Wait({ms})")
        self.ms = ms

    def run(self, ctx: "Context") -> None:
        if ctx.cancel.wait(self.ms / 1000.0):
            logger.debug(f"wait of {self.ms}ms cancelled")


class CaptureFunc(Hook):
    """User callback receiving the context"""

    def __init__(self, when: When, fn: Callable[["Context"], Any]):
        super().__init__(when, f"CaptureFunc({getattr(fn, '__name__', 'fn')})")
        self.fn = fn

    def run(self, ctx: "Context") -> None:
        self.fn(ctx)


# ==================== Environment ====================

class SetEnv(Hook):
    def __init__(self, when: When, name: str, value: Any):
        super().__init__(when, f"SetEnv({name!r})")
        self.env = name
        self.value = value

    def run(self, ctx: "Context") -> None:
        os.environ[self.env] = stringify_message(resolve_value(self.value, ctx))


class UnSetEnv(Hook):
    def __init__(self, when: When, name: str):
        super().__init__(when, f"UnSetEnv({name!r})")
        self.env = name

    def run(self, ctx: "Context") -> None:
        os.environ.pop(self.env, None)


# ==================== Databases ====================

class DbInsert(Hook):
    def __init__(self, when: When, table: str, row: Dict[str, Any], db: str = ""):
        super().__init__(when, f"DbInsert({table!r})")
        self.table = table
        self.row = row
        self.db = db

    def run(self, ctx: "Context") -> None:
        ctx.db_insert(self.db, self.table, self.row)


class DbExec(Hook):
    def __init__(self, when: When, sql: str, *args: Any, db: str = ""):
        super().__init__(when, f"DbExec({sql!r})")
        self.sql = sql
        self.args = args
        self.db = db

    def run(self, ctx: "Context") -> None:
        ctx.db_exec(self.db, self.sql, *self.args)


class DbClearTable(Hook):
    def __init__(self, when: When, table: str, db: str = ""):
        super().__init__(when, f"DbClearTable({table!r})")
        self.table = table
        self.db = db

    def run(self, ctx: "Context") -> None:
        ctx.db_clear_table(self.db, self.table)


# ==================== Control flow ====================

class Conditional(Hook):
    """Run the wrapped hooks only when ``condition`` resolves to ``expect``"""

    def __init__(self, when: When, condition: Any, hooks: Sequence[Hook], expect: bool = True):
        super().__init__(when, "If" if expect else "IfNot")
        self.condition = condition
        self.hooks = list(hooks)
        self.expect = expect

    def run(self, ctx: "Context") -> None:
        cond = resolve_value(self.condition, ctx)
        if not isinstance(cond, bool):
            raise CaptureError(f"condition must resolve to bool, got {type(cond).__name__}",
                               self.name, frame=self.frame, values=[OperandValue(original=self.condition, resolved=cond)])
        if cond == self.expect:
            for h in self.hooks:
                h.execute(ctx)

    def validate(self, ctx: "Context") -> None:
        for h in self.hooks:
            h.validate(ctx)


def If(when: When, condition: Any, *hooks: Hook) -> Conditional:
    return Conditional(when, condition, hooks, expect=True)


def IfNot(when: When, condition: Any, *hooks: Hook) -> Conditional:
    return Conditional(when, condition, hooks, expect=False)


class ForEach(Hook):
    """
    Iterate over a resolved list, setting ``iter_var`` (default ``"."``) for
    each item and running the wrapped hooks or callables.
    """

    def __init__(self, when: When, value: Any, iter_var: Optional[str], *ops: Any):
        super().__init__(when, f"ForEach({value})")
        self.value = value
        self.iter_var = iter_var or "."
        self.ops = ops

    def run(self, ctx: "Context") -> None:
        items = resolve_value(self.value, ctx)
        if items is None:
            return
        if not isinstance(items, (list, tuple)):
            raise CaptureError(f"invalid ForEach value type: {type(items).__name__}", self.name, frame=self.frame)
        for item in items:
            ctx.set_var(self.iter_var, item)
            for op in self.ops:
                if isinstance(op, Hook):
                    op.execute(ctx)
                elif op is not None:
                    op(ctx)

    def validate(self, ctx: "Context") -> None:
        for op in self.ops:
            if isinstance(op, Hook):
                op.validate(ctx)


# ==================== Listeners ====================

class EventsClear(Hook):
    def __init__(self, when: When, name: str):
        super().__init__(when, f"EventsClear({name!r})")
        self.listener = name

    def run(self, ctx: "Context") -> None:
        listener = ctx.get_listener(self.listener)
        if listener is None:
            raise CaptureError(f"unknown listener {self.listener!r}", self.name, frame=self.frame)
        listener.clear()


class SSEListen(Hook):
    """
    Open a server-sent events stream on ``url`` (a path on the API host or an
    absolute URL) and buffer event data under ``name``. Running it again
    clears and reuses the open stream.
    """

    def __init__(self, name: str, url: Any, max_messages: int = 0, json_messages: bool = False):
        super().__init__(When.BEFORE, f"SSEListen({name!r})")
        self.listener = name
        self.url = url
        self.max_messages = max_messages
        self.json_messages = json_messages

    def run(self, ctx: "Context") -> None:
        def factory() -> SSEListener:
            path = stringify_message(resolve_value(self.url, ctx))
            url = path if "://" in path else ctx.host.rstrip("/") + path
            client = getattr(ctx.http_do, "client", None)
            closer = None
            if not isinstance(client, httpx.Client):
                client = httpx.Client()
                closer = client.close
            request = client.build_request("GET", url, headers={"Accept": "text/event-stream"},
                                           timeout=httpx.Timeout(10.0, read=None))
            return SSEListener(client, request, cancel=ctx.cancel, max_messages=retention(self.max_messages),
                               json_messages=self.json_messages, closer=closer).start()

        register_listener(ctx, self.listener, SSEListener, factory)


# ==================== Request shaping ====================

class RequestHook(Hook):
    """Before-only hooks that alter the request about to be built"""

    def __init__(self, name: str):
        super().__init__(When.BEFORE, name)

    def _pending(self, ctx: "Context") -> Any:
        if ctx.current_request is not None:
            raise CaptureError("request already built", self.name, frame=self.frame)
        if ctx.request_overrides is None:
            raise CaptureError("no current method", self.name, frame=self.frame)
        return ctx.request_overrides


class SetQueryParam(RequestHook):
    def __init__(self, name: str, *values: Any):
        super().__init__(f"SetQueryParam({name!r})")
        self.param = name
        self.values = values

    def run(self, ctx: "Context") -> None:
        self._pending(ctx).query[self.param] = list(self.values)


class SetRequestHeader(RequestHook):
    def __init__(self, name: str, value: Any):
        super().__init__(f"SetRequestHeader({name!r})")
        self.header = name
        self.value = value

    def run(self, ctx: "Context") -> None:
        self._pending(ctx).headers[self.header] = self.value


class SetRequestBody(RequestHook):
    def __init__(self, value: Any):
        super().__init__("SetRequestBody")
        self.value = value

    def run(self, ctx: "Context") -> None:
        overrides = self._pending(ctx)
        overrides.body = self.value
        overrides.has_body = True


# ==================== Image lookup ====================

I = TypeVar("I")


def image_from_context(ctx: "Context", image_type: Type[I], names: Iterable[str], default: str) -> I:
    """Locate a supporting image by explicit name (or its canonical default)"""
    names = [n for n in names if n]
    name = names[0] if names else default
    img = ctx.get_image(name)
    if img is None:
        raise DeclarationError(f"image not found: {name!r}")
    if not isinstance(img, image_type):
        raise DeclarationError(f"image {name!r} is not a {image_type.__name__}")
    return img

