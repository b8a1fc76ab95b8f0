"""Durable request queue: publisher and subscriber backends."""

from repo_cron.pubsub.publisher import PublishError, QueuePublisher, create_publisher
from repo_cron.pubsub.subscriber import (
    AckDeadlineExtender,
    QueueTransportError,
    SqliteSubscriber,
    SqlModelSubscriber,
    Subscriber,
    create_subscriber,
)

__all__ = [
    "AckDeadlineExtender",
    "PublishError",
    "QueuePublisher",
    "QueueTransportError",
    "SqlModelSubscriber",
    "SqliteSubscriber",
    "Subscriber",
    "create_publisher",
    "create_subscriber",
]
