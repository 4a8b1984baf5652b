# apiplan/images/messaging.py
"""
STOMP-style message broker image (canonical name ``artemis``).

    MessagingImage(MessagingOptions(
        client_factory=lambda img: StompClient(img.host, img.mapped_port, img.username, img.password),
        consumers={"orders": Receiver(max_messages=10, json_messages=True)},
    ))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..hooks import stringify_message
from ..listeners import BufferedListener
from . import pubsub
from .pubsub import Handler, PubSubImage, Receiver

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "artemis"
DEFAULT_PASSWORD = "artemis"


class MessagingClient(Protocol):
    def send(self, queue: str, body: str, headers: Dict[str, Any]) -> None:
        ...

    def publish(self, topic: str, body: str, headers: Dict[str, Any]) -> None:
        ...

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        ...

    def consume(self, queue: str, handler: Handler) -> Callable[[], None]:
        ...

    def create_queue(self, queue: str) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class MessagingOptions:
    client_factory: Callable[["MessagingImage"], MessagingClient]
    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    create_queues: List[str] = field(default_factory=list)
    subscribers: Dict[str, Receiver] = field(default_factory=dict)  # topic -> receiver
    consumers: Dict[str, Receiver] = field(default_factory=dict)  # queue -> receiver
    marshaller: Optional[Callable[[Any], Tuple[str, str]]] = None  # msg -> (body, content type)
    leave_running: bool = False


class MessagingListener(BufferedListener):
    pass


class MessagingImage(PubSubImage):
    canonical_name = "artemis"
    default_port = 61613
    listener_type = MessagingListener

    def __init__(self, options: MessagingOptions, name: str = "", host: str = "localhost",
                 port: Optional[int] = None, mapped_port: Optional[int] = None):
        super().__init__(
            subscribers=options.subscribers,
            consumers=options.consumers,
            name=name,
            host=host,
            port=port,
            mapped_port=mapped_port,
            username=options.username,
            password=options.password,
            leave_running=options.leave_running,
        )
        self.options = options

    def start(self) -> None:
        self.client = self.options.client_factory(self)
        for queue in self.options.create_queues:
            self.client.create_queue(queue)
        self.setup_listeners()

    def shutdown(self) -> None:
        self.stop_listeners()
        if self.client is not None and not self.leave_running:
            self.client.close()

    def encode(self, message: Any) -> Tuple[str, Dict[str, Any]]:
        if self.options.marshaller is not None:
            body, content_type = self.options.marshaller(message)
        else:
            body = stringify_message(message)
            content_type = "application/json" if isinstance(message, (dict, list)) else "text/plain"
        return body, {"content-type": content_type}

    def send(self, queue: str, message: Any) -> None:
        body, headers = self.encode(message)
        self.client.send(queue, body, headers)

    def publish(self, topic: str, message: Any) -> None:
        body, headers = self.encode(message)
        self.client.publish(topic, body, headers)


# ==================== Hooks & resolvables ====================

class SendMessage(pubsub.SendMessage):
    image_type = MessagingImage


class PublishMessage(pubsub.PublishMessage):
    image_type = MessagingImage


class QueueListener(pubsub.QueueListener):
    image_type = MessagingImage


class TopicListener(pubsub.TopicListener):
    image_type = MessagingImage


class ReceivedQueueMessages(pubsub.ReceivedQueueMessages):
    image_type = MessagingImage


class ReceivedQueueMessage(pubsub.ReceivedQueueMessage):
    image_type = MessagingImage


class ReceivedTopicMessages(pubsub.ReceivedTopicMessages):
    image_type = MessagingImage


class ReceivedTopicMessage(pubsub.ReceivedTopicMessage):
    image_type = MessagingImage
