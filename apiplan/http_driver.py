# apiplan/http_driver.py
"""
HTTP driver: request building and the per-method run.

MethodRun walks one execution unit through

    PENDING → BEFORE → CALLING → ASSERTING → AFTER → DONE

A before-hook error or a transport error skips straight to AFTER; a failed
requirement (or any unmet expectation under fail_fast) does the same from
ASSERTING. After hooks always run.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple, Union
from urllib.parse import quote

import httpx

from .endpoint import PLACEHOLDER_RE, ExecutionUnit
from .errors import ApiPlanError, DeclarationError, ResolutionError, TransportError
from .hooks import stringify_message
from .resolvables import decode_body, jsonify, resolve_value

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


# ==================== Doers ====================

class HttpDoer(Protocol):
    def do(self, request: httpx.Request) -> httpx.Response:
        ...


class HttpxDoer:
    """Default doer over a shared ``httpx.Client``"""

    def __init__(
        self,
        timeout_s: float = 30.0,
        verify_ssl: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.client = client or httpx.Client(timeout=timeout_s, verify=verify_ssl, transport=transport)

    def do(self, request: httpx.Request) -> httpx.Response:
        return self.client.send(request)

    def close(self) -> None:
        self.client.close()


def send_cancellable(doer: HttpDoer, request: httpx.Request, cancel: threading.Event,
                     poll_s: float = 0.05) -> httpx.Response:
    """
    Send and read the response on a daemon thread. When ``cancel`` is set
    first, the call is abandoned and TransportError raised; the thread is
    left to finish on its own.
    """
    if cancel.is_set():
        raise TransportError("call cancelled before sending")
    outcome: Dict[str, Any] = {}
    done = threading.Event()

    def call() -> None:
        try:
            response = doer.do(request)
            response.read()
            outcome["response"] = response
        except Exception as e:
            outcome["error"] = e
        finally:
            done.set()

    threading.Thread(target=call, name=f"apiplan-{request.method.lower()}", daemon=True).start()
    while not done.wait(poll_s):
        if cancel.is_set():
            logger.warning(f"⛔ abandoning in-flight {request.method} {request.url}")
            raise TransportError("call cancelled in flight")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["response"]


# ==================== Request building ====================

@dataclass
class RequestOverrides:
    """Pending request parts that before hooks may still change"""
    query: Dict[str, List[Any]] = field(default_factory=dict)
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    has_body: bool = False

    @classmethod
    def from_unit(cls, unit: ExecutionUnit) -> "RequestOverrides":
        m = unit.method
        query: Dict[str, List[Any]] = {}
        for name, values in m.query:
            query.setdefault(name, []).extend(values)
        return cls(query=query, headers=dict(m.headers), body=m.body, has_body=m.has_body)


def param_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if v is None:
        return ""
    return stringify_message(v)


def fill_path(template: str, values: List[Any]) -> str:
    """Replace each ``{name}`` in order with the percent-escaped value"""
    found = PLACEHOLDER_RE.findall(template)
    if len(found) != len(values):
        raise DeclarationError(f"{template}: {len(found)} path placeholder(s) but {len(values)} path param(s)")
    it = iter(values)
    return PLACEHOLDER_RE.sub(lambda _: quote(param_text(next(it)), safe=""), template)


def encode_body(body: Any, marshaler: Any = None) -> Tuple[Optional[bytes], Optional[str]]:
    """Serialise a resolved body; returns (content, default content type)"""
    if marshaler is not None:
        out = marshaler(body)
        if isinstance(out, str):
            out = out.encode("utf-8")
        return out, None
    if body is None:
        return None, None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body), None
    if isinstance(body, str):
        return body.encode("utf-8"), TEXT_CONTENT_TYPE
    return json.dumps(jsonify(body)).encode("utf-8"), JSON_CONTENT_TYPE


# ==================== Form bodies ====================

class FormBody(ABC):
    """A request body httpx encodes itself; ``build`` returns ``httpx.Request`` kwargs"""

    @abstractmethod
    def build(self, ctx: "Context") -> Dict[str, Any]:
        ...


def _part_bytes(v: Any) -> bytes:
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    return param_text(v).encode("utf-8")


class Field:
    """A plain multipart form field"""

    def __init__(self, name: str, value: Any):
        self.name = name
        self.value = value

    def part(self, ctx: "Context") -> Tuple[str, Tuple[Optional[str], bytes]]:
        return self.name, (None, _part_bytes(resolve_value(self.value, ctx)))


class FileField:
    """
    A multipart file. ``source`` resolves to bytes (the content) or a str
    (a path to read; its basename is the default file name). The content
    type is guessed from the file name when not given.
    """

    def __init__(self, field_name: str, file_name: str, source: Any, content_type: str = ""):
        self.field_name = field_name or "file"
        self.file_name = file_name
        self.source = source
        self.content_type = content_type

    def part(self, ctx: "Context") -> Tuple[str, Tuple[Optional[str], bytes, str]]:
        src = resolve_value(self.source, ctx)
        file_name = self.file_name
        if isinstance(src, (bytes, bytearray)):
            data = bytes(src)
        elif isinstance(src, str):
            file_name = file_name or os.path.basename(src)
            try:
                with open(src, "rb") as f:
                    data = f.read()
            except OSError as e:
                raise ResolutionError(f"multipart file {src!r}: {e}", cause=e) from e
        else:
            raise ResolutionError(f"unsupported multipart file source type {type(src).__name__}")
        content_type = self.content_type
        if not content_type:
            guessed, _ = mimetypes.guess_type(file_name or "")
            content_type = guessed or "application/octet-stream"
        return self.field_name, (file_name or None, data, content_type)


class Multipart(FormBody):
    """``multipart/form-data`` body of Field and FileField parts, in order"""

    def __init__(self, *parts: Union[Field, FileField]):
        for p in parts:
            if not isinstance(p, (Field, FileField)):
                raise DeclarationError(f"multipart accepts Field or FileField, got {type(p).__name__}")
        self.parts = parts

    def build(self, ctx: "Context") -> Dict[str, Any]:
        return {"files": [p.part(ctx) for p in self.parts]}


class UrlEncoded(FormBody):
    """
    ``application/x-www-form-urlencoded`` body from key/value pairs and/or
    dicts; list values become repeated keys.
    """

    def __init__(self, *values: Any):
        self.values: Dict[str, Any] = {}
        i = 0
        while i < len(values):
            v = values[i]
            if isinstance(v, dict):
                self.values.update({str(k): x for k, x in v.items()})
                i += 1
                continue
            if i + 1 >= len(values):
                raise DeclarationError(f"urlencoded key {v!r} has no value")
            self.values[str(v)] = values[i + 1]
            i += 2

    def build(self, ctx: "Context") -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for k, v in self.values.items():
            resolved = resolve_value(v, ctx)
            if isinstance(resolved, (list, tuple)):
                data[k] = [param_text(x) for x in resolved]
            else:
                data[k] = param_text(resolved)
        return {"data": data}


def build_request(ctx: "Context", unit: ExecutionUnit, overrides: Optional[RequestOverrides] = None) -> httpx.Request:
    method = unit.method
    overrides = overrides or RequestOverrides.from_unit(unit)

    path = fill_path(unit.url, [resolve_value(p, ctx) for p in method.path_params])
    params: List[Tuple[str, str]] = []
    for name, values in overrides.query.items():
        for v in values:
            resolved = resolve_value(v, ctx)
            if isinstance(resolved, list):
                params.extend((name, param_text(x)) for x in resolved)
            else:
                params.append((name, param_text(resolved)))

    headers: Dict[str, str] = {k: param_text(resolve_value(v, ctx)) for k, v in overrides.headers.items()}
    content: Optional[bytes] = None
    form: Dict[str, Any] = {}
    if overrides.has_body and isinstance(overrides.body, FormBody) and method.request_marshaler is None:
        form = overrides.body.build(ctx)
    elif overrides.has_body:
        content, content_type = encode_body(resolve_value(overrides.body, ctx), method.request_marshaler)
        if content_type and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = content_type

    cookies = dict(ctx.default_cookies)
    for name, value in method.set_cookies:
        cookies[name] = param_text(resolve_value(value, ctx))
    for name in method.use_cookies:
        stored = ctx.get_cookie(name)
        if stored is None:
            raise ResolutionError(f"cookie {name!r} not stored")
        cookies[name] = stored
    if cookies:
        headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())

    request = httpx.Request(method.verb, ctx.host.rstrip("/") + path, params=params or None,
                            headers=headers, content=content, **form)
    if form:
        request.read()
    return request


# ==================== Method run ====================

class MethodState(str, Enum):
    PENDING = "pending"
    BEFORE = "before"
    CALLING = "calling"
    ASSERTING = "asserting"
    AFTER = "after"
    DONE = "done"


class MethodRun:
    """Runs one execution unit against the context"""

    def __init__(self, ctx: "Context", unit: ExecutionUnit):
        self.ctx = ctx
        self.unit = unit
        self.state = MethodState.PENDING
        self.history: List[MethodState] = [MethodState.PENDING]
        self.failed = False
        self.skipped = False

    def _to(self, state: MethodState) -> None:
        self.state = state
        self.history.append(state)

    def _fail(self, err: BaseException) -> None:
        self.failed = True
        self.ctx.report_failure(err)

    def run(self) -> bool:
        ctx = self.ctx
        ctx.set_current_unit(self.unit)
        ctx.request_overrides = RequestOverrides.from_unit(self.unit)
        logger.debug(f"▶️ {self.unit.verb} {self.unit.url}")
        try:
            if not self._conditions_hold():
                self.skipped = True
                for exp in self.unit.method.expectations:
                    ctx.report_skipped(exp)
                ctx.log(f"skipped: condition not met for {self.unit.verb} {self.unit.url}")
                return not self.failed
            self._to(MethodState.BEFORE)
            if self._before():
                self._to(MethodState.CALLING)
                if self._call():
                    self._to(MethodState.ASSERTING)
                    self._assert()
            self._to(MethodState.AFTER)
            self._after()
        finally:
            self._to(MethodState.DONE)
            ctx.request_overrides = None
        return not self.failed

    def _conditions_hold(self) -> bool:
        for cond, expect in self.unit.method.conditions:
            try:
                value = resolve_value(cond, self.ctx)
            except ApiPlanError as e:
                self._fail(e)
                return False
            if bool(value) != expect:
                return False
        return True

    def _before(self) -> bool:
        for hook in self.unit.method.before:
            try:
                hook.execute(self.ctx)
            except ApiPlanError as e:
                self._fail(e)
                return False
        return True

    def _call(self) -> bool:
        ctx = self.ctx
        method = self.unit.method
        try:
            request = build_request(ctx, self.unit, ctx.request_overrides)
            for auth in method.authorizers:
                request = auth(ctx, request) or request
        except ApiPlanError as e:
            self._fail(e)
            return False
        except Exception as e:
            self._fail(ResolutionError(f"building request failed: {e}", cause=e, frame=self.unit.frame))
            return False
        ctx.current_request = request

        events: List[Tuple[str, int]] = []
        if ctx.trace_timings:
            request.extensions["trace"] = lambda name, info: events.append((name, ctx.clock()))

        start = ctx.clock()
        try:
            response = send_cancellable(ctx.http_do, request, ctx.cancel)
        except Exception as e:
            self._fail(TransportError(f"{method.verb} {request.url}: {e}", cause=e, frame=self.unit.frame))
            return False
        duration = ctx.clock() - start

        url, verb = self.unit.url, method.verb
        ctx.timings.record(verb, url, duration, request)
        ctx.coverage.report_timing(url, verb, request, duration)
        ctx.coverage.report_status(url, verb, response.status_code)
        if ctx.trace_timings:
            ctx.traces.append({"method": verb, "url": url, "duration_ns": duration,
                               "events": [{"event": n, "at_ns": t - start} for n, t in events]})

        ctx.current_response = response
        try:
            if method.response_unmarshaler is not None:
                ctx.current_body = method.response_unmarshaler(response.content)
            else:
                ctx.current_body = decode_body(response.content)
        except Exception as e:
            self._fail(ResolutionError(f"response unmarshal failed: {e}", cause=e, frame=self.unit.frame))
            return False
        logger.debug(f"   {verb} {url} → {response.status_code} ({duration / 1e6:.1f}ms)")

        for name in method.store_cookies:
            value = response.cookies.get(name)
            if value is None:
                self._fail(ResolutionError(f"response has no cookie {name!r}", frame=self.unit.frame))
                return False
            ctx.store_cookie(name, value)
        return True

    def _assert(self) -> None:
        ctx = self.ctx
        method = self.unit.method
        exps = method.expectations
        for i, exp in enumerate(exps):
            try:
                unmet = exp.met(ctx)
            except ApiPlanError as e:
                self._fail(e)
                stop = exp.must or method.fail_fast_
            else:
                if unmet is None:
                    ctx.report_met(exp)
                    continue
                self.failed = True
                ctx.report_unmet(exp, unmet)
                stop = exp.must or method.fail_fast_
            if stop:
                for rest in exps[i + 1:]:
                    ctx.report_skipped(rest)
                return

    def _after(self) -> None:
        for hook in self.unit.method.after:
            try:
                hook.execute(self.ctx)
            except ApiPlanError as e:
                self._fail(e)
