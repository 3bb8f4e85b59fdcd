"""Notification facts and the dispatchers that hand them to delivery."""

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bloodbank.adapters import redis_adapter

logger = logging.getLogger(__name__)

NOTIFICATIONS_CHANNEL = "bloodbank:notifications"

# notification types
BLOOD_REQUEST = "blood_request"
DONATION_MATCH = "donation_match"
DONATION_CONFIRMED = "donation_confirmed"
DONATION_COMPLETED = "donation_completed"
EMERGENCY_ALERT = "emergency_alert"
APPOINTMENT = "appointment"
MEDICAL_UPDATE = "medical_update"
FEEDBACK_REQUEST = "feedback_request"

PRIORITIES = ("low", "medium", "high", "critical")


@dataclass
class Notification:
    recipient_id: str
    title: str
    message: str
    type: str
    priority: str = "medium"
    is_urgent: bool = False
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    action_required: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class AbstractNotificationDispatcher(abc.ABC):
    @abc.abstractmethod
    def send(self, notification: Notification):
        raise NotImplementedError

    @abc.abstractmethod
    def send_batch(self, notifications: List[Notification]):
        """Send several notifications as one unit, e.g. to all staff."""
        raise NotImplementedError


class RedisNotificationDispatcher(AbstractNotificationDispatcher):
    """Publishes notifications for the delivery workers (e-mail, SMS, push)."""

    def __init__(self, client=None, channel: str = NOTIFICATIONS_CHANNEL):
        self.client = client
        self.channel = channel

    def send(self, notification):
        redis_adapter.publish(self.channel, notification, client=self.client)

    def send_batch(self, notifications):
        if not notifications:
            return
        client = self.client or redis_adapter.r
        pipe = client.pipeline()
        for notification in notifications:
            pipe.publish(self.channel, redis_adapter.serialize(notification))
        pipe.execute()
        logger.info(f"Published batch of {len(notifications)} notifications to {self.channel}")
