# apiplan/images/document.py
"""
Mongo-style document database image (canonical name ``mongo``).

The client is expected to look like a pymongo ``MongoClient``:
``client[db][coll]`` yields a collection with ``insert_one``, ``delete_many``,
``find_one``, ``find``, ``count_documents`` and ``watch``; ``client[db]``
yields a database with ``command`` and ``list_collection_names``.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..errors import ResolutionError
from ..hooks import When
from ..listeners import BufferedListener, Listener, PollingWorker, name_and_dest, register_listener, retention
from ..resolvables import jsonify, resolve_value
from . import ImageHook, ImageResolvable, SupportingImage

if TYPE_CHECKING:
    from ..context import Context

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "root"
DEFAULT_PASSWORD = "root"


@dataclass
class DocumentOptions:
    client_factory: Callable[["DocumentImage"], Any]
    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    # db -> collection -> index specs passed to create_index
    create_indices: Dict[str, Dict[str, List[Any]]] = field(default_factory=dict)
    leave_running: bool = False


class ChangeListener(BufferedListener):
    """Change-stream listener; events are the change documents"""

    def changes(self, op: str = "") -> List[Dict[str, Any]]:
        events = self.events()
        if op in ("", "*"):
            return events
        return [c for c in events if isinstance(c, dict) and c.get("operationType") == op]


class DocumentImage(SupportingImage):
    canonical_name = "mongo"
    default_port = 27017

    def __init__(self, options: DocumentOptions, name: str = "", host: str = "localhost",
                 port: Optional[int] = None, mapped_port: Optional[int] = None):
        super().__init__(name=name, host=host, port=port, mapped_port=mapped_port,
                         username=options.username, password=options.password,
                         leave_running=options.leave_running)
        self.options = options
        self.client: Any = None
        self.watches: Dict[str, ChangeListener] = {}

    @property
    def uri(self) -> str:
        return f"mongodb://{self.username}:{self.password}@{self.host}:{self.mapped_port}"

    def start(self) -> None:
        self.client = self.options.client_factory(self)
        for db_name, collections in self.options.create_indices.items():
            for coll_name, indices in collections.items():
                coll = self.client[db_name][coll_name]
                for index in indices:
                    coll.create_index(index)

    def shutdown(self) -> None:
        for listener in self.watches.values():
            listener.stop()
        if self.client is not None and not self.leave_running:
            self.client.close()

    def collection(self, db_name: str, coll_name: str) -> Any:
        return self.client[db_name][coll_name]

    def watch(self, db_name: str, coll_name: str, max_messages: Optional[int]) -> ChangeListener:
        stream = self.collection(db_name, coll_name).watch()
        listener = ChangeListener(max_messages, unmarshaler=_normalize_change)

        def poll(timeout_s: float) -> Any:
            change = stream.try_next()
            if change is None:
                time.sleep(timeout_s)
            return change

        worker = PollingWorker(listener, poll,
                               name=f"{self.name}-{db_name}.{coll_name}", cancel=self.cancel).start()

        def close() -> None:
            worker.stop()
            stream.close()

        listener.closer = close
        return listener


def _normalize_change(change: Any) -> Any:
    return jsonify(dict(change)) if isinstance(change, dict) else change


def _document(value: Any, what: str) -> Any:
    if value is None:
        raise ResolutionError(f"{what} is nil")
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError as e:
            raise ResolutionError(f"{what} is not valid JSON: {e}") from e
    return value


# ==================== Hooks ====================

class InsertDocument(ImageHook):
    image_type = DocumentImage

    def __init__(self, when: When, db_name: str, coll_name: str, doc: Any, img_name: str = ""):
        super().__init__(when, f"InsertDocument({db_name!r}, {coll_name!r})", img_name)
        self.db_name = db_name
        self.coll_name = coll_name
        self.doc = doc

    def run(self, ctx: "Context") -> None:
        doc = _document(resolve_value(self.doc, ctx), "document")
        self.image(ctx).collection(self.db_name, self.coll_name).insert_one(doc)


class ClearCollection(ImageHook):
    image_type = DocumentImage

    def __init__(self, when: When, db_name: str, coll_name: str, img_name: str = ""):
        super().__init__(when, f"ClearCollection({db_name!r}, {coll_name!r})", img_name)
        self.db_name = db_name
        self.coll_name = coll_name

    def run(self, ctx: "Context") -> None:
        self.image(ctx).collection(self.db_name, self.coll_name).delete_many({})


class DeleteDocuments(ImageHook):
    image_type = DocumentImage

    def __init__(self, when: When, db_name: str, coll_name: str, filter: Any, img_name: str = ""):
        super().__init__(when, f"DeleteDocuments({db_name!r}, {coll_name!r})", img_name)
        self.db_name = db_name
        self.coll_name = coll_name
        self.filter = filter

    def run(self, ctx: "Context") -> None:
        flt = _document(resolve_value(self.filter, ctx), "filter")
        self.image(ctx).collection(self.db_name, self.coll_name).delete_many(flt)


class Watch(ImageHook):
    """Before hook registering a change-stream listener on a collection"""
    image_type = DocumentImage

    def __init__(self, name: str, db_name: str, coll_name: str, max_messages: int = 0, img_name: str = ""):
        name, _ = name_and_dest(name, f"{db_name}.{coll_name}")
        super().__init__(When.BEFORE, f"Watch({db_name!r}, {coll_name!r})", img_name)
        self.listener_name = name
        self.db_name = db_name
        self.coll_name = coll_name
        self.max_messages = max_messages

    def run(self, ctx: "Context") -> None:
        img = self.image(ctx)

        def factory() -> Listener:
            listener = img.watch(self.db_name, self.coll_name, retention(self.max_messages))
            img.watches[self.listener_name] = listener
            return listener

        register_listener(ctx, self.listener_name, ChangeListener, factory)


# ==================== Resolvables ====================

class _CollectionResolvable(ImageResolvable):
    image_type = DocumentImage

    def __init__(self, label: str, db_name: str, coll_name: str, img_name: str = ""):
        super().__init__(label, img_name)
        self.db_name = db_name
        self.coll_name = coll_name

    def collection(self, ctx: "Context") -> Any:
        return self.image(ctx).collection(self.db_name, self.coll_name)


class FindOne(_CollectionResolvable):
    """First document matching ``filter``, None when nothing matches"""

    def __init__(self, db_name: str, coll_name: str, filter: Any = None, img_name: str = ""):
        super().__init__(f"FindOne({db_name!r}, {coll_name!r})", db_name, coll_name, img_name)
        self.filter = filter

    def resolve(self, ctx: "Context") -> Any:
        flt = resolve_value(self.filter, ctx)
        doc = self.collection(ctx).find_one(_document(flt, "filter") if flt is not None else {})
        return jsonify(dict(doc)) if doc is not None else None


class Find(_CollectionResolvable):
    def __init__(self, db_name: str, coll_name: str, filter: Any = None, img_name: str = ""):
        super().__init__(f"Find({db_name!r}, {coll_name!r})", db_name, coll_name, img_name)
        self.filter = filter

    def resolve(self, ctx: "Context") -> Any:
        flt = resolve_value(self.filter, ctx)
        cursor = self.collection(ctx).find(_document(flt, "filter") if flt is not None else {})
        return [jsonify(dict(doc)) for doc in cursor]


class DocumentsCount(_CollectionResolvable):
    def __init__(self, db_name: str, coll_name: str, img_name: str = ""):
        super().__init__(f"DocumentsCount({db_name!r}, {coll_name!r})", db_name, coll_name, img_name)

    def resolve(self, ctx: "Context") -> Any:
        return self.collection(ctx).count_documents({})


class Query(ImageResolvable):
    """
    Run a database command and return its documents.

    ``query`` is resolved; a string is parsed as JSON. Cursor results
    (``{"cursor": {"firstBatch": [...]}}``) are unwrapped to the batch.
    """
    image_type = DocumentImage

    def __init__(self, db_name: str, query: Any, img_name: str = ""):
        super().__init__(f"Query({db_name!r})", img_name)
        self.db_name = db_name
        self.query = query

    def resolve(self, ctx: "Context") -> Any:
        cmd = _document(resolve_value(self.query, ctx), "query")
        result = self.image(ctx).client[self.db_name].command(cmd)
        cursor = result.get("cursor") if isinstance(result, dict) else None
        if isinstance(cursor, dict) and "firstBatch" in cursor:
            return [jsonify(dict(doc)) for doc in cursor["firstBatch"]]
        return jsonify(result)


class DatabasesCount(ImageResolvable):
    image_type = DocumentImage

    def __init__(self, img_name: str = ""):
        super().__init__("DatabasesCount()", img_name)

    def resolve(self, ctx: "Context") -> Any:
        return len(self.image(ctx).client.list_database_names())


class CollectionsCount(ImageResolvable):
    image_type = DocumentImage

    def __init__(self, db_name: str, img_name: str = ""):
        super().__init__(f"CollectionsCount({db_name!r})", img_name)
        self.db_name = db_name

    def resolve(self, ctx: "Context") -> Any:
        return len(self.image(ctx).client[self.db_name].list_collection_names())


class Changes(ImageResolvable):
    """Retained changes of a Watch listener, optionally of one operation type"""
    image_type = DocumentImage

    def __init__(self, name: str, op: str = "", img_name: str = ""):
        super().__init__(f"Changes({name!r}, {op!r})", img_name)
        self.listener_name = name
        self.op = op

    def resolve(self, ctx: "Context") -> Any:
        listener = self.image(ctx).watches.get(self.listener_name)
        if listener is None:
            raise ResolutionError(f"no change listener {self.listener_name!r}")
        return listener.changes(self.op)


class ChangesCount(ImageResolvable):
    image_type = DocumentImage

    def __init__(self, name: str, img_name: str = ""):
        super().__init__(f"ChangesCount({name!r})", img_name)
        self.listener_name = name

    def resolve(self, ctx: "Context") -> Any:
        listener = self.image(ctx).watches.get(self.listener_name)
        if listener is None:
            raise ResolutionError(f"no change listener {self.listener_name!r}")
        return listener.received()
