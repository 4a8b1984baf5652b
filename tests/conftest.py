"""Shared test fixtures and in-memory doubles for apiplan tests."""

import io
import json
import sqlite3
import threading
from collections import defaultdict, deque

import httpx
import pytest

from apiplan import options
from apiplan.context import Context


# ── HTTP ──


class FakeClock:
    """Nanosecond clock that only moves when told to"""

    def __init__(self, start=1_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance_ms(self, ms):
        self.now += int(ms * 1_000_000)


class StubDoer:
    """
    Scripted HTTP doer. Each entry is (status, body[, headers]) or a callable
    taking the request; the last entry repeats once the script runs out.
    """

    def __init__(self, *script, clock=None, durations_ms=()):
        self.script = deque(script or [(200, None)])
        self.requests = []
        self.clock = clock
        self.durations_ms = deque(durations_ms)

    def do(self, request):
        self.requests.append(request)
        if self.clock is not None and self.durations_ms:
            self.clock.advance_ms(self.durations_ms.popleft())
        entry = self.script.popleft() if len(self.script) > 1 else self.script[0]
        if callable(entry):
            return entry(request)
        status, body, *rest = entry
        headers = dict(rest[0]) if rest else {}
        if body is None:
            content = b""
        elif isinstance(body, (bytes, str)):
            content = body.encode("utf-8") if isinstance(body, str) else body
        else:
            content = json.dumps(body).encode("utf-8")
            headers.setdefault("content-type", "application/json")
        return httpx.Response(status, content=content, headers=headers, request=request)

    def bodies(self):
        return [json.loads(r.content) if r.content else None for r in self.requests]


class RaisingDoer:
    def __init__(self, exc=None):
        self.exc = exc or httpx.ConnectError("connection refused")
        self.requests = []

    def do(self, request):
        self.requests.append(request)
        raise self.exc


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub():
    return StubDoer()


@pytest.fixture
def ctx(stub):
    return Context(host="http://api.test", http_do=stub)


@pytest.fixture
def quiet():
    """Logging option writing the harness output to buffers"""
    out, err = io.StringIO(), io.StringIO()
    opt = options.Logging(out, err)
    opt.out_buffer = out
    opt.err_buffer = err
    return opt


# ── SQL ──


@pytest.fixture
def sqlite_db():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.execute("CREATE TABLE pets (id TEXT PRIMARY KEY, name TEXT, tags TEXT)")
    conn.commit()
    yield conn
    conn.close()


# ── Brokers & stores ──


class MemoryBroker:
    """Synchronous pub/sub: send/publish deliver to handlers immediately"""

    def __init__(self, *args, **kwargs):
        self.topic_handlers = defaultdict(list)
        self.queue_handlers = defaultdict(list)
        self.sent = []
        self.published = []
        self.created_queues = []
        self.closed = False

    def _add(self, table, dest, handler):
        table[dest].append(handler)

        def close():
            if handler in table[dest]:
                table[dest].remove(handler)

        return close

    def subscribe(self, topic, handler):
        return self._add(self.topic_handlers, topic, handler)

    def consume(self, queue, handler):
        return self._add(self.queue_handlers, queue, handler)

    def create_queue(self, queue):
        self.created_queues.append(queue)

    def send(self, queue, body, headers=None):
        self.sent.append((queue, body, headers))
        for h in list(self.queue_handlers[queue]):
            h(body)

    def publish(self, topic, body, headers=None):
        self.published.append((topic, body, headers))
        for h in list(self.topic_handlers[topic]):
            h(body)

    def close(self):
        self.closed = True


class MemoryKeyValue(MemoryBroker):
    def __init__(self):
        super().__init__()
        self.keys = {}
        self.lists = defaultdict(list)

    def get(self, key):
        return self.keys.get(key)

    def set(self, key, value, expiry_s=0):
        self.keys[key] = value

    def exists(self, key):
        return key in self.keys

    def delete(self, key):
        return self.keys.pop(key, None) is not None

    def queue_length(self, queue):
        return len(self.lists[queue])

    def send(self, queue, body, headers=None):
        if not self.queue_handlers[queue]:
            self.lists[queue].append(body)
        super().send(queue, body, headers)

    def publish(self, topic, body, headers=None):
        super().publish(topic, body, headers)


class MemoryStreamConsumer:
    def __init__(self):
        self.pending = deque()
        self.ready = threading.Event()
        self.closed = False

    def poll(self, timeout_s):
        if self.pending:
            return self.pending.popleft()
        self.ready.wait(timeout_s)
        self.ready.clear()
        return self.pending.popleft() if self.pending else None

    def close(self):
        self.closed = True


class MemoryStream:
    def __init__(self):
        self.consumers = defaultdict(list)
        self.closed = False

    def consumer(self, topic):
        c = MemoryStreamConsumer()
        self.consumers[topic].append(c)
        return c

    def publish(self, topic, key, value):
        from apiplan.images.stream import Message

        for c in self.consumers[topic]:
            c.pending.append(Message(topic=topic, key=key, value=value))
            c.ready.set()

    def close(self):
        self.closed = True


class MemoryCollection:
    def __init__(self):
        self.docs = []
        self.indices = []
        self.streams = []

    def insert_one(self, doc):
        self.docs.append(dict(doc))
        for s in self.streams:
            s.push({"operationType": "insert", "fullDocument": dict(doc)})

    def _match(self, doc, flt):
        return all(doc.get(k) == v for k, v in (flt or {}).items())

    def delete_many(self, flt):
        kept = [d for d in self.docs if not self._match(d, flt)]
        removed = len(self.docs) - len(kept)
        self.docs = kept
        for s in self.streams:
            for _ in range(removed):
                s.push({"operationType": "delete"})

    def find_one(self, flt):
        return next((d for d in self.docs if self._match(d, flt)), None)

    def find(self, flt):
        return [d for d in self.docs if self._match(d, flt)]

    def count_documents(self, flt):
        return len(self.find(flt))

    def create_index(self, index):
        self.indices.append(index)

    def watch(self):
        s = MemoryChangeStream()
        self.streams.append(s)
        return s


class MemoryChangeStream:
    def __init__(self):
        self.pending = deque()
        self.closed = False

    def push(self, change):
        self.pending.append(change)

    def try_next(self):
        return self.pending.popleft() if self.pending else None

    def close(self):
        self.closed = True


class MemoryDatabase(defaultdict):
    def __init__(self):
        super().__init__(MemoryCollection)
        self.commands = []

    def command(self, cmd):
        self.commands.append(cmd)
        coll = self[cmd.get("find", "")]
        return {"cursor": {"firstBatch": coll.find(cmd.get("filter"))}, "ok": 1}

    def list_collection_names(self):
        return list(self.keys())


class MemoryMongo(defaultdict):
    def __init__(self):
        super().__init__(MemoryDatabase)
        self.closed = False

    def list_database_names(self):
        return list(self.keys())

    def close(self):
        self.closed = True
