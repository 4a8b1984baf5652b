# apiplan/images/keyvalue.py
"""
Redis-protocol key-value cache image (canonical name ``dragonfly``).

Besides keys, the cache offers list-backed queues (RPUSH) and pub/sub
topics, both of which can be listened on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Protocol

from ..hooks import When, stringify_message
from ..listeners import BufferedListener
from ..resolvables import resolve_value
from . import ImageHook, ImageResolvable, pubsub
from .pubsub import Handler, PubSubImage, Receiver

if TYPE_CHECKING:
    from ..context import Context

logger = logging.getLogger(__name__)


class KeyValueClient(Protocol):
    def publish(self, topic: str, message: str) -> None:
        ...

    def send(self, queue: str, message: str) -> None:
        ...

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        ...

    def consume(self, queue: str, handler: Handler) -> Callable[[], None]:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, expiry_s: float = 0) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...

    def queue_length(self, queue: str) -> int:
        ...

    def close(self) -> None:
        ...


@dataclass
class KeyValueOptions:
    client_factory: Callable[["KeyValueImage"], KeyValueClient]
    subscribers: Dict[str, Receiver] = field(default_factory=dict)
    consumers: Dict[str, Receiver] = field(default_factory=dict)
    leave_running: bool = False


class KeyValueListener(BufferedListener):
    pass


class KeyValueImage(PubSubImage):
    canonical_name = "dragonfly"
    default_port = 6379
    listener_type = KeyValueListener

    def __init__(self, options: KeyValueOptions, name: str = "", host: str = "localhost",
                 port: Optional[int] = None, mapped_port: Optional[int] = None):
        super().__init__(
            subscribers=options.subscribers,
            consumers=options.consumers,
            name=name,
            host=host,
            port=port,
            mapped_port=mapped_port,
            leave_running=options.leave_running,
        )
        self.options = options

    def start(self) -> None:
        self.client = self.options.client_factory(self)
        self.setup_listeners()

    def shutdown(self) -> None:
        self.stop_listeners()
        if self.client is not None and not self.leave_running:
            self.client.close()

    def send(self, queue: str, message: Any) -> None:
        self.client.send(queue, stringify_message(message))

    def publish(self, topic: str, message: Any) -> None:
        self.client.publish(topic, stringify_message(message))


# ==================== Hooks ====================

class SetKey(ImageHook):
    image_type = KeyValueImage

    def __init__(self, when: When, key: str, value: Any, expiry_s: float = 0, img_name: str = ""):
        super().__init__(when, f"SetKey({key!r})", img_name)
        self.key = key
        self.value = value
        self.expiry_s = expiry_s

    def run(self, ctx: "Context") -> None:
        value = stringify_message(resolve_value(self.value, ctx))
        self.image(ctx).client.set(self.key, value, self.expiry_s)


class DeleteKey(ImageHook):
    image_type = KeyValueImage

    def __init__(self, when: When, key: str, img_name: str = ""):
        super().__init__(when, f"DeleteKey({key!r})", img_name)
        self.key = key

    def run(self, ctx: "Context") -> None:
        self.image(ctx).client.delete(self.key)


class SendMessage(pubsub.SendMessage):
    image_type = KeyValueImage


class PublishMessage(pubsub.PublishMessage):
    image_type = KeyValueImage


class QueueListener(pubsub.QueueListener):
    image_type = KeyValueImage


class TopicListener(pubsub.TopicListener):
    image_type = KeyValueImage


# ==================== Resolvables ====================

class Key(ImageResolvable):
    """Value of a key, None when missing"""
    image_type = KeyValueImage

    def __init__(self, key: str, img_name: str = ""):
        super().__init__(f"Key({key!r})", img_name)
        self.key = key

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).client.get(self.key)


class KeyExists(ImageResolvable):
    image_type = KeyValueImage

    def __init__(self, key: str, img_name: str = ""):
        super().__init__(f"KeyExists({key!r})", img_name)
        self.key = key

    def resolve(self, ctx: "Context") -> Any:
        return bool(self.image(ctx).client.exists(self.key))


class QueueLen(ImageResolvable):
    """Current length of a queue; the queue need not be listened on"""
    image_type = KeyValueImage

    def __init__(self, queue: str, img_name: str = ""):
        super().__init__(f"QueueLen({queue!r})", img_name)
        self.queue = queue

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).client.queue_length(self.queue)


class ReceivedQueueMessages(pubsub.ReceivedQueueMessages):
    image_type = KeyValueImage


class ReceivedQueueMessage(pubsub.ReceivedQueueMessage):
    image_type = KeyValueImage


class ReceivedTopicMessages(pubsub.ReceivedTopicMessages):
    image_type = KeyValueImage


class ReceivedTopicMessage(pubsub.ReceivedTopicMessage):
    image_type = KeyValueImage
