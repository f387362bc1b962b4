"""Notifications — subscriptions, throttled email/Slack alerts, history."""

from .notifier import Notifier
from .store import (
    Channel,
    DeliveryStatus,
    DuplicateSubscriptionError,
    NotificationRecord,
    NotificationStore,
    Subscription,
)
from .transports import EmailTransport, SlackTransport, Transport
