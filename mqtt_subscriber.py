import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from config import Mqtt2FileConfig
from session import ClientIdentity, SessionPolicy


_PLAIN_SCHEMES = {"tcp": 1883, "mqtt": 1883}
_TLS_SCHEMES = {"ssl": 8883, "mqtts": 8883}

# Upper bound on a single blocking queue operation, so waits stay responsive
# to cancellation and to stop_consuming().
POLL_INTERVAL = 0.5


class BrokerConnectionError(Exception):
    """Raised when the broker cannot be reached or refuses the connection."""


class SubscriptionError(Exception):
    """Raised when a subscribe request fails or is refused by the broker."""


class Disconnected:
    """Marker pushed into the delivery queue when the connection is lost."""

    def __repr__(self) -> str:
        return "DISCONNECTED"


DISCONNECTED = Disconnected()


@dataclass(frozen=True)
class ConnectionAck:
    server_uri: str
    mqtt_version: int
    session_present: bool


@dataclass
class IncomingMessage:
    topic: str
    payload: bytes
    metadata: Dict[str, str] = field(default_factory=dict)
    mid: int = 0
    qos: int = 0
    generation: int = 0

    @classmethod
    def from_paho(cls, msg: mqtt.MQTTMessage, generation: int = 0) -> "IncomingMessage":
        metadata: Dict[str, str] = {}
        for key, value in getattr(msg.properties, "UserProperty", None) or []:
            # First occurrence of a repeated user property wins
            metadata.setdefault(key, value)
        return cls(
            topic=msg.topic,
            payload=bytes(msg.payload),
            metadata=metadata,
            mid=msg.mid,
            qos=msg.qos,
            generation=generation,
        )


Delivery = Union[IncomingMessage, Disconnected, None]


def parse_broker_uri(uri: str) -> Tuple[str, int, bool]:
    """Split a broker URI such as ``tcp://localhost:1883`` into (host, port, tls)."""
    parts = urlsplit(uri)
    scheme = parts.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        default_port, use_tls = _PLAIN_SCHEMES[scheme], False
    elif scheme in _TLS_SCHEMES:
        default_port, use_tls = _TLS_SCHEMES[scheme], True
    else:
        raise ValueError(f"Unsupported broker URI scheme in {uri!r}")
    if not parts.hostname:
        raise ValueError(f"Missing host in broker URI {uri!r}")
    return parts.hostname, parts.port or default_port, use_tls


class MQTTSubscriber:
    """MQTT v5 subscriber that hands messages to a consumer thread via a bounded queue.

    paho's network thread runs the callbacks and feeds the queue; the control
    thread reads from it with ``receive()``. QoS 1 messages are acknowledged
    only once the control thread calls ``acknowledge()``. paho's automatic
    reconnection is turned off: reconnecting is up to the caller, through
    ``reconnect()``.
    """

    def __init__(
        self,
        identity: ClientIdentity,
        broker_uri: str = Mqtt2FileConfig.BROKER_URI,
        config: Optional[Mqtt2FileConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize MQTT Subscriber.

        Args:
            identity: Client identity, rendered as the MQTT client id.
            broker_uri: Broker URI, ``tcp://``, ``mqtt://``, ``ssl://`` or ``mqtts://``.
            config: Optional Mqtt2FileConfig; defaults to new Mqtt2FileConfig().
            logger: Logger to report to; defaults to this module's logger.
        """
        self.config = config or Mqtt2FileConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.identity = identity
        self.broker_uri = broker_uri
        self.host, self.port, use_tls = parse_broker_uri(broker_uri)
        self.message_count = 0

        self.client = mqtt.Client(
            CallbackAPIVersion.VERSION2,
            client_id=identity.client_id,
            protocol=mqtt.MQTTv5,
            reconnect_on_failure=False,
            manual_ack=True,
        )
        if use_tls:
            self.client.tls_set()

        # Set authentication if provided
        if self.config.USERNAME and self.config.PASSWORD:
            self.client.username_pw_set(self.config.USERNAME, self.config.PASSWORD)

        self._queue: "queue.Queue[Union[IncomingMessage, Disconnected]]" = queue.Queue(
            maxsize=self.config.QUEUE_SIZE
        )
        self._consuming = threading.Event()
        self._should_disconnect = False
        self._generation = 0

        self._connack_event = threading.Event()
        self._last_ack: Optional[ConnectionAck] = None
        self._last_connect_reason: Any = None

        self._suback_event = threading.Event()
        self._suback: Tuple[int, List[Any]] = (0, [])

        # Configure callbacks
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message
        self.client.on_log = self._on_log

    # Callbacks, run on paho's network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self._last_connect_reason = reason_code
        if reason_code.is_failure:
            self._last_ack = None
            self.logger.error(f"Broker refused connection: {reason_code}")
        else:
            self._generation += 1
            self._last_ack = ConnectionAck(
                server_uri=self.broker_uri,
                mqtt_version=mqtt.MQTTv5,
                session_present=bool(flags.session_present),
            )
        self._connack_event.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        if self._should_disconnect:
            self.logger.info("Disconnected from MQTT broker")
            return
        self.logger.warning(f"Unexpected disconnection. Reason: {reason_code}")
        if not self._enqueue(DISCONNECTED):
            self.logger.debug("Not consuming; disconnect notification not queued")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        self._suback = (mid, list(reason_code_list))
        self._suback_event.set()

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        if not self._consuming.is_set():
            # Left unacknowledged so a persistent session gets it again later
            self.logger.debug(f"Not consuming; leaving message on {msg.topic} unacknowledged")
            return
        self.message_count += 1
        self.logger.debug(f"Received message on {msg.topic} ({len(msg.payload)} bytes)")
        if not self._enqueue(IncomingMessage.from_paho(msg, self._generation)):
            self.logger.debug(f"Consumption stopped before message on {msg.topic} was queued")

    def _on_log(self, client, userdata, level, buf):
        self.logger.debug(f"MQTT Log: {buf}")

    def _enqueue(self, item: Union[IncomingMessage, Disconnected]) -> bool:
        while self._consuming.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    # Connection lifecycle

    def connect(self, policy: SessionPolicy) -> ConnectionAck:
        """Connect to the broker using the given session policy.

        Raises:
            BrokerConnectionError: If the broker is unreachable, does not answer
                in time, or refuses the connection.
        """
        properties = None
        if policy.persistent:
            properties = Properties(PacketTypes.CONNECT)
            properties.SessionExpiryInterval = policy.session_expiry

        self._should_disconnect = False
        self._connack_event.clear()
        self.logger.info(f"Connecting to MQTT broker at {self.broker_uri} as {self.identity.client_id}")
        try:
            self.client.connect(
                self.host,
                self.port,
                self.config.KEEPALIVE,
                clean_start=policy.clean_start,
                properties=properties,
            )
        except (OSError, ValueError) as exc:
            raise BrokerConnectionError(f"Failed to connect to {self.broker_uri}: {exc}") from exc
        self.client.loop_start()
        return self._wait_for_connack()

    def reconnect(self) -> ConnectionAck:
        """Re-establish the transport with the options of the last connect()."""
        self._should_disconnect = False
        self._connack_event.clear()
        self.client.loop_stop()
        try:
            self.client.reconnect()
        except (OSError, ValueError) as exc:
            raise BrokerConnectionError(f"Failed to reconnect to {self.broker_uri}: {exc}") from exc
        self.client.loop_start()
        return self._wait_for_connack()

    def _wait_for_connack(self) -> ConnectionAck:
        if not self._connack_event.wait(self.config.CONNECT_TIMEOUT):
            self.client.loop_stop()
            raise BrokerConnectionError(
                f"No answer from {self.broker_uri} within {self.config.CONNECT_TIMEOUT}s"
            )
        if self._last_ack is None:
            self.client.loop_stop()
            raise BrokerConnectionError(f"Connection refused: {self._last_connect_reason}")
        self.logger.info(
            f"Connected to: '{self._last_ack.server_uri}' with MQTT version {self._last_ack.mqtt_version}"
        )
        return self._last_ack

    def is_connected(self) -> bool:
        return self.client.is_connected()

    def disconnect(self):
        """Disconnect from the broker. Safe to call more than once."""
        self.stop_consuming()
        if self._should_disconnect:
            return
        self._should_disconnect = True
        try:
            if self.client.is_connected():
                self.client.disconnect()
        finally:
            self.client.loop_stop()

    def subscribe(self, topic_filter: str, qos: int):
        """Subscribe and wait for the broker's SUBACK.

        Raises:
            SubscriptionError: If the request cannot be sent, is not answered,
                or is refused.
        """
        self._suback_event.clear()
        result, mid = self.client.subscribe(topic_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscriptionError(f"Failed to subscribe to {topic_filter} (rc={result})")
        if not self._suback_event.wait(self.config.CONNECT_TIMEOUT):
            raise SubscriptionError(f"No SUBACK for {topic_filter} within {self.config.CONNECT_TIMEOUT}s")
        suback_mid, reason_codes = self._suback
        if suback_mid != mid:
            raise SubscriptionError(f"Unexpected SUBACK for {topic_filter} (mid {suback_mid}, expected {mid})")
        for reason_code in reason_codes:
            if reason_code.is_failure:
                raise SubscriptionError(f"Broker refused subscription to {topic_filter}: {reason_code}")
            if reason_code.value < qos:
                self.logger.warning(f"Broker granted QoS {reason_code.value} for {topic_filter}, requested {qos}")
        self.logger.info(f"Subscribed to topic: {topic_filter} (QoS {qos})")

    # Consumption

    def start_consuming(self):
        self._consuming.set()

    def stop_consuming(self):
        """Stop queueing deliveries. Idempotent and safe from any thread."""
        if self._consuming.is_set():
            self._consuming.clear()
            self.logger.debug("Stopped consuming messages")

    def is_consuming(self) -> bool:
        return self._consuming.is_set()

    def receive(self, timeout: float, cancel=None) -> Delivery:
        """Wait up to ``timeout`` seconds for the next delivery.

        Returns the next IncomingMessage, DISCONNECTED, or None on timeout.
        When ``cancel`` is set, returns None as soon as the buffer is empty.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                return self._queue.get(timeout=min(remaining, POLL_INTERVAL))
            except queue.Empty:
                if cancel is not None and cancel.is_set():
                    return None

    def acknowledge(self, message: IncomingMessage):
        """Send the PUBACK for a handled message."""
        if message.qos == 0:
            return
        if message.generation != self._generation:
            self.logger.debug(f"Skipping ack for mid {message.mid}; received on an earlier connection")
            return
        result = self.client.ack(message.mid, message.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning(f"Failed to acknowledge message {message.mid} (rc={result})")

    def get_stats(self) -> dict:
        return {
            "connected": self.is_connected(),
            "message_count": self.message_count,
            "broker_uri": self.broker_uri,
            "client_id": self.identity.client_id,
        }
