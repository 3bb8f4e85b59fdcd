import abc
import logging

from bloodbank.adapters import redis_adapter
from bloodbank.domain.audit import AuditFact

logger = logging.getLogger(__name__)

AUDIT_CHANNEL = "bloodbank:audit"


class AbstractAuditRecorder(abc.ABC):
    @abc.abstractmethod
    def record(self, fact: AuditFact):
        raise NotImplementedError


class RedisAuditRecorder(AbstractAuditRecorder):
    """Publishes audit facts; storage and retention belong to the audit service."""

    def __init__(self, client=None, channel: str = AUDIT_CHANNEL):
        self.client = client
        self.channel = channel

    def record(self, fact):
        redis_adapter.publish(self.channel, fact, client=self.client)
