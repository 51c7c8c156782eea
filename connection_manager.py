import logging
from typing import Optional

from config import Mqtt2FileConfig
from mqtt_subscriber import ConnectionAck, MQTTSubscriber
from session import ClientIdentity, SessionPolicy, build_session_policy

__all__ = ["ConnectionManager", "build_session_policy", "topic_filter"]


def topic_filter(prefix: str) -> str:
    """Multi-level wildcard filter covering everything below ``prefix``."""
    return f"{prefix.rstrip('/')}/#"


class ConnectionManager:
    """Opens the connection and makes sure the subscription exists on the broker.

    A resumed persistent session already carries the subscription, so it is
    only registered when the broker reports no session present.
    """

    def __init__(
        self,
        subscriber: MQTTSubscriber,
        identity: ClientIdentity,
        policy: SessionPolicy,
        topic_prefix: str,
        qos: int = Mqtt2FileConfig.QOS,
        logger: Optional[logging.Logger] = None,
    ):
        self.subscriber = subscriber
        self.identity = identity
        self.policy = policy
        self.topic_filter = topic_filter(topic_prefix)
        self.qos = qos
        self.logger = logger or logging.getLogger(__name__)

    def connect(self) -> ConnectionAck:
        return self.subscriber.connect(self.policy)

    def reconcile_subscriptions(self, ack: ConnectionAck) -> bool:
        """Subscribe unless the broker still holds our session.

        Returns True if a subscribe request was issued.
        """
        if ack.session_present and self.policy.persistent:
            self.logger.info("  w/ client session already present on broker.")
            return False
        if ack.session_present:
            self.logger.warning("Broker reported a session for a clean start; subscribing anyway")
        self.logger.info(f"Subscribing to topics {self.topic_filter}...")
        self.subscriber.subscribe(self.topic_filter, self.qos)
        return True

    def establish(self) -> ConnectionAck:
        """Connect and reconcile subscriptions before any message is read."""
        ack = self.connect()
        self.reconcile_subscriptions(ack)
        return ack

    def reestablish(self) -> ConnectionAck:
        """Reconnect the same client and reconcile subscriptions again."""
        ack = self.subscriber.reconnect()
        self.reconcile_subscriptions(ack)
        return ack

    def shutdown(self):
        # If we're still connected, then disconnect now,
        # otherwise we're already disconnected.
        if self.subscriber.is_connected():
            self.logger.info("Disconnecting")
        self.subscriber.disconnect()
