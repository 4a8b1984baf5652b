# apiplan/listeners.py
"""
Listener registry.

Listeners wrap background consumers of external events (queue and topic
messages, change-stream deltas, server-sent events). The consumer writes into
the listener's buffer from its own thread; the main run thread reads
snapshots.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any, Callable, Deque, Iterable, Iterator, List, Optional, Tuple, Type

import httpx

from .errors import DeclarationError, ResolutionError, TransportError

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

INT64_MAX = 2 ** 63 - 1


class Listener(ABC):
    """A named consumer whose observations can be asserted against"""

    @abstractmethod
    def events(self) -> List[Any]:
        """Snapshot copy of the retained events"""

    @abstractmethod
    def events_count(self) -> int:
        """Number of retained events"""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class BufferedListener(Listener):
    """
    Thread-safe bounded event buffer.

    ``max_messages``:
      - None: retain everything
      - 0: retain nothing (messages are still counted)
      - n > 0: keep the newest n, dropping the oldest
    """

    def __init__(
        self,
        max_messages: Optional[int] = None,
        json_messages: bool = False,
        unmarshaler: Optional[Callable[[Any], Any]] = None,
        closer: Optional[Callable[[], None]] = None,
    ):
        if max_messages is not None and max_messages < 0:
            max_messages = 0
        self.max = max_messages
        self.json = json_messages
        self.unmarshaler = unmarshaler
        self.closer = closer
        self.count = 0
        self._msgs: Deque[Any] = deque(maxlen=max_messages)
        self._lock = threading.Lock()
        self._stopped = False

    # ---- producer side ----

    def receive(self, raw: Any) -> None:
        """Record one message; called from the consumer's thread"""
        value = self._decode(raw) if self.max != 0 else None
        with self._lock:
            if self.count == INT64_MAX:
                self.count = 1
            else:
                self.count += 1
            if self.max != 0:
                self._msgs.append(value)

    def _decode(self, raw: Any) -> Any:
        if self.unmarshaler is not None:
            try:
                return self.unmarshaler(raw)
            except Exception:
                logger.error("listener unmarshaler failed; keeping raw message", exc_info=True)
                return raw
        if self.json:
            body = getattr(raw, "body", raw)
            try:
                return json.loads(body)
            except (TypeError, ValueError):
                return raw
        return raw

    # ---- reader side ----

    def events(self) -> List[Any]:
        with self._lock:
            return list(self._msgs)

    def events_count(self) -> int:
        with self._lock:
            return len(self._msgs)

    def received(self) -> int:
        with self._lock:
            return self.count

    def received_message(self, index: int) -> Any:
        with self._lock:
            n = len(self._msgs)
            idx = index + n if index < 0 else index
            if 0 <= idx < n:
                return self._msgs[idx]
        raise ResolutionError(f"message index out of range {index}")

    def clear(self) -> None:
        with self._lock:
            self._msgs.clear()

    def stop(self) -> None:
        closer, self.closer = self.closer, None
        self._stopped = True
        if closer is not None:
            try:
                closer()
            except Exception:
                logger.error("listener close failed", exc_info=True)

    @property
    def stopped(self) -> bool:
        return self._stopped


class PollingWorker:
    """
    Background thread feeding a listener from a blocking poll function.

    ``poll(timeout_s)`` returns a message or None when nothing arrived. Errors
    raised by poll are logged and kept on ``errors``; the worker keeps going.
    """

    def __init__(
        self,
        listener: BufferedListener,
        poll: Callable[[float], Any],
        cancel: Optional[threading.Event] = None,
        interval_s: float = 0.1,
        name: str = "listener",
    ):
        self.listener = listener
        self.poll = poll
        self.cancel = cancel
        self.interval_s = interval_s
        self.errors: List[BaseException] = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"apiplan-{name}", daemon=True)

    def start(self) -> "PollingWorker":
        self._thread.start()
        return self

    def stop(self, timeout_s: float = 1.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout_s)

    def _done(self) -> bool:
        return self._stop.is_set() or (self.cancel is not None and self.cancel.is_set())

    def _loop(self) -> None:
        while not self._done():
            try:
                msg = self.poll(self.interval_s)
            except Exception as e:
                logger.error(f"listener poll failed: {e}", exc_info=True)
                self.errors.append(e)
                self._stop.wait(self.interval_s)
                continue
            if msg is not None:
                self.listener.receive(msg)


# ==================== Registration ====================

def name_and_dest(name: str, dest: str) -> Tuple[str, str]:
    """Default a missing listener name to its destination and vice versa"""
    if not name and dest:
        return dest, dest
    if name and not dest:
        return name, name
    return name, dest


def register_listener(
    ctx: "Context",
    name: str,
    listener_type: Type[Listener],
    factory: Callable[[], Listener],
) -> Listener:
    """
    Register a listener under ``name``.

    An existing listener of the same type is cleared and reused (no
    re-subscription); one of a different type is a declaration error.
    """
    existing = ctx.listeners.get(name)
    if existing is not None:
        if type(existing) is not listener_type:
            raise DeclarationError(
                f"expected {listener_type.__name__} for listener {name!r} but got {type(existing).__name__}"
            )
        existing.clear()
        return existing
    listener = factory()
    ctx.register_listener(name, listener)
    logger.debug(f"🎧 listener registered: {name}")
    return listener


def retention(max_messages: int) -> Optional[int]:
    """Listeners registered by hooks treat max <= 0 as unbounded"""
    return None if max_messages <= 0 else max_messages


# ==================== Server-sent events ====================

def parse_sse(lines: Iterable[str]) -> Iterator[str]:
    """
    Yield the data of each event in a ``text/event-stream``. Multiple ``data``
    lines join with newlines and a blank line dispatches the event. Comments
    and unknown fields are skipped; a trailing event with no blank line is
    dropped.
    """
    data: List[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            data.append(value[1:] if value.startswith(" ") else value)


class SSEListener(BufferedListener):
    """
    Buffers event data from a streaming GET on its own thread. Non-2xx
    responses and read errors are logged and kept on ``errors``.
    """

    def __init__(
        self,
        client: httpx.Client,
        request: httpx.Request,
        cancel: Optional[threading.Event] = None,
        max_messages: Optional[int] = None,
        json_messages: bool = False,
        closer: Optional[Callable[[], None]] = None,
    ):
        super().__init__(max_messages, json_messages, closer=closer)
        self.client = client
        self.request = request
        self.cancel = cancel
        self.errors: List[BaseException] = []
        self.finished = threading.Event()
        self._stop = threading.Event()
        self._response: Optional[httpx.Response] = None
        self._thread = threading.Thread(target=self._listen, name=f"apiplan-sse-{request.url.path}", daemon=True)

    def start(self) -> "SSEListener":
        self._thread.start()
        return self

    def _done(self) -> bool:
        return self._stop.is_set() or (self.cancel is not None and self.cancel.is_set())

    def _listen(self) -> None:
        url = self.request.url
        try:
            self._response = self.client.send(self.request, stream=True)
            status = self._response.status_code
            if status // 100 != 2:
                raise TransportError(f"SSE unexpected response status {status} from {url}")
            logger.info(f"📡 SSE stream open: {url}")
            for data in parse_sse(self._response.iter_lines()):
                if self._done():
                    break
                self.receive(data)
        except Exception as e:
            if self._done():
                logger.debug(f"SSE stream {url} ended on stop: {e}")
            else:
                logger.error(f"SSE stream {url} failed: {e}")
                self.errors.append(e)
        finally:
            if self._response is not None:
                self._response.close()
            self.finished.set()

    def stop(self) -> None:
        self._stop.set()
        response = self._response
        if response is not None:
            response.close()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=1.0)
        super().stop()
