#!/usr/bin/env python3
"""
Tests for the MQTT subscriber

These tests patch the paho client, so no MQTT broker is needed.
"""

import time
import unittest
from types import SimpleNamespace
from unittest.mock import Mock, patch

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from config import Mqtt2FileConfig
from consumer_loop import ShutdownToken
from mqtt_subscriber import (
    DISCONNECTED,
    BrokerConnectionError,
    IncomingMessage,
    MQTTSubscriber,
    SubscriptionError,
    parse_broker_uri,
)
from session import build_session_policy, create_client_identity


class FastConfig(Mqtt2FileConfig):
    CONNECT_TIMEOUT = 0.05
    QUEUE_SIZE = 10


def reason(is_failure=False, value=0):
    return Mock(is_failure=is_failure, value=value)


def paho_message(topic="sensors/a", payload=b"data", mid=7, qos=1, user_properties=None):
    properties = SimpleNamespace(UserProperty=user_properties or [])
    return SimpleNamespace(topic=topic, payload=payload, mid=mid, qos=qos, properties=properties)


class TestParseBrokerUri(unittest.TestCase):

    def test_plain(self):
        """Test plain tcp and mqtt URIs default to port 1883"""
        self.assertEqual(parse_broker_uri("tcp://localhost:1883"), ("localhost", 1883, False))
        self.assertEqual(parse_broker_uri("mqtt://broker"), ("broker", 1883, False))

    def test_tls(self):
        """Test ssl and mqtts URIs default to port 8883"""
        self.assertEqual(parse_broker_uri("ssl://broker:9999"), ("broker", 9999, True))
        self.assertEqual(parse_broker_uri("mqtts://broker"), ("broker", 8883, True))

    def test_invalid(self):
        """Test unsupported schemes and missing hosts raise ValueError"""
        for uri in ("http://broker", "localhost:1883", "tcp://"):
            with self.subTest(uri=uri):
                with self.assertRaises(ValueError):
                    parse_broker_uri(uri)


class TestIncomingMessage(unittest.TestCase):

    def test_from_paho(self):
        """Test topic, payload and user properties are copied from paho"""
        msg = paho_message(user_properties=[("filename", "a.bin"), ("filename", "b.bin"), ("k", "v")])
        message = IncomingMessage.from_paho(msg, generation=3)
        self.assertEqual(message.metadata, {"filename": "a.bin", "k": "v"})
        self.assertEqual((message.mid, message.qos, message.generation), (7, 1, 3))
        self.assertEqual(message.payload, b"data")

    def test_from_paho_without_properties(self):
        """Test a message without properties has empty metadata"""
        msg = SimpleNamespace(topic="t", payload=b"", mid=1, qos=0, properties=None)
        self.assertEqual(IncomingMessage.from_paho(msg).metadata, {})


class TestMQTTSubscriber(unittest.TestCase):
    """Test cases for MQTTSubscriber"""

    def setUp(self):
        patcher = patch("mqtt_subscriber.mqtt.Client")
        self.client_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.client_class.return_value
        self.client.ack.return_value = mqtt.MQTT_ERR_SUCCESS
        self.identity = create_client_identity("archive", host="box")
        self.subscriber = MQTTSubscriber(self.identity, "tcp://broker:1883", FastConfig())

    def answer_connect(self, session_present=False, failure=False):
        def connect(*args, **kwargs):
            self.subscriber._on_connect(
                self.client, None, SimpleNamespace(session_present=session_present),
                reason(is_failure=failure, value=135 if failure else 0), None,
            )
            return mqtt.MQTT_ERR_SUCCESS
        return connect

    def test_client_creation(self):
        """Test paho client is created for MQTT v5 with manual acks"""
        self.client_class.assert_called_once_with(
            CallbackAPIVersion.VERSION2,
            client_id="mqtt2file-box-archive",
            protocol=mqtt.MQTTv5,
            reconnect_on_failure=False,
            manual_ack=True,
        )
        self.client.tls_set.assert_not_called()

    def test_tls_client(self):
        """Test TLS is enabled for ssl URIs"""
        MQTTSubscriber(self.identity, "mqtts://broker", FastConfig())
        self.client.tls_set.assert_called_once_with()

    def test_connect_persistent_session(self):
        """Test persistent policy sends clean start off and session expiry"""
        self.client.connect.side_effect = self.answer_connect(session_present=True)
        ack = self.subscriber.connect(build_session_policy(True))
        self.assertTrue(ack.session_present)
        self.assertEqual(ack.mqtt_version, mqtt.MQTTv5)
        args, kwargs = self.client.connect.call_args
        self.assertEqual(args[:2], ("broker", 1883))
        self.assertFalse(kwargs["clean_start"])
        self.assertEqual(kwargs["properties"].SessionExpiryInterval, 360000)
        self.client.loop_start.assert_called_once_with()

    def test_connect_clean_session(self):
        """Test clean policy sends clean start on"""
        self.client.connect.side_effect = self.answer_connect()
        ack = self.subscriber.connect(build_session_policy(False))
        self.assertFalse(ack.session_present)
        _, kwargs = self.client.connect.call_args
        self.assertTrue(kwargs["clean_start"])
        self.assertIsNone(kwargs["properties"])

    def test_connect_unreachable(self):
        """Test a socket error raises BrokerConnectionError"""
        self.client.connect.side_effect = ConnectionRefusedError("refused")
        with self.assertRaises(BrokerConnectionError):
            self.subscriber.connect(build_session_policy(False))

    def test_connect_refused_by_broker(self):
        """Test a failing CONNACK raises BrokerConnectionError"""
        self.client.connect.side_effect = self.answer_connect(failure=True)
        with self.assertRaises(BrokerConnectionError):
            self.subscriber.connect(build_session_policy(False))

    def test_connect_no_answer(self):
        """Test a missing CONNACK raises BrokerConnectionError"""
        with self.assertRaises(BrokerConnectionError):
            self.subscriber.connect(build_session_policy(False))
        self.client.loop_stop.assert_called()

    def test_reconnect(self):
        """Test reconnect restarts the network loop and waits for CONNACK"""
        self.client.reconnect.side_effect = self.answer_connect(session_present=True)
        ack = self.subscriber.reconnect()
        self.assertTrue(ack.session_present)
        self.client.loop_stop.assert_called_once_with()
        self.client.loop_start.assert_called_once_with()

    def test_reconnect_failure(self):
        """Test a failed reconnect raises BrokerConnectionError"""
        self.client.reconnect.side_effect = OSError("unreachable")
        with self.assertRaises(BrokerConnectionError):
            self.subscriber.reconnect()

    def test_subscribe(self):
        """Test subscribe waits for the SUBACK"""
        def subscribe(topic, qos):
            self.subscriber._on_subscribe(self.client, None, 3, [reason(value=1)], None)
            return mqtt.MQTT_ERR_SUCCESS, 3
        self.client.subscribe.side_effect = subscribe
        self.subscriber.subscribe("sensors/#", 1)
        self.client.subscribe.assert_called_once_with("sensors/#", qos=1)

    def test_subscribe_refused(self):
        """Test a refused SUBACK raises SubscriptionError"""
        def subscribe(topic, qos):
            self.subscriber._on_subscribe(self.client, None, 3, [reason(is_failure=True, value=135)], None)
            return mqtt.MQTT_ERR_SUCCESS, 3
        self.client.subscribe.side_effect = subscribe
        with self.assertRaises(SubscriptionError):
            self.subscriber.subscribe("sensors/#", 1)

    def test_subscribe_send_failure(self):
        """Test a failed subscribe request raises SubscriptionError"""
        self.client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        with self.assertRaises(SubscriptionError):
            self.subscriber.subscribe("sensors/#", 1)

    def test_subscribe_no_suback(self):
        """Test a missing SUBACK raises SubscriptionError"""
        self.client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 4)
        with self.assertRaises(SubscriptionError):
            self.subscriber.subscribe("sensors/#", 1)

    def test_messages_queued_while_consuming(self):
        """Test messages are queued while consuming"""
        self.subscriber.start_consuming()
        self.subscriber._on_message(self.client, None, paho_message(user_properties=[("filename", "a.bin")]))
        message = self.subscriber.receive(1.0)
        self.assertIsInstance(message, IncomingMessage)
        self.assertEqual(message.metadata, {"filename": "a.bin"})
        self.assertEqual(self.subscriber.message_count, 1)

    def test_messages_dropped_after_stop(self):
        """Test messages arriving after stop_consuming are not queued"""
        self.subscriber.start_consuming()
        self.subscriber.stop_consuming()
        self.subscriber.stop_consuming()
        self.subscriber._on_message(self.client, None, paho_message())
        self.assertIsNone(self.subscriber.receive(0.05))
        self.client.ack.assert_not_called()

    def test_receive_timeout(self):
        """Test receive returns None after the timeout"""
        start = time.monotonic()
        self.assertIsNone(self.subscriber.receive(0.1))
        self.assertGreaterEqual(time.monotonic() - start, 0.09)

    def test_receive_cancelled(self):
        """Test receive returns early once shutdown is requested"""
        shutdown = ShutdownToken()
        shutdown.cancel()
        start = time.monotonic()
        self.assertIsNone(self.subscriber.receive(60, cancel=shutdown))
        self.assertLess(time.monotonic() - start, 5)

    def test_unexpected_disconnect_queued(self):
        """Test an unexpected disconnect queues the marker"""
        self.subscriber.start_consuming()
        self.subscriber._on_disconnect(self.client, None, None, reason(is_failure=True, value=128), None)
        self.assertIs(self.subscriber.receive(1.0), DISCONNECTED)

    def test_requested_disconnect_not_queued(self):
        """Test our own disconnect does not queue the marker"""
        self.subscriber.start_consuming()
        self.client.is_connected.return_value = True
        self.subscriber.disconnect()
        self.subscriber._on_disconnect(self.client, None, None, reason(), None)
        self.assertIsNone(self.subscriber.receive(0.05))

    def test_disconnect_idempotent(self):
        """Test disconnect can be called twice"""
        self.client.is_connected.return_value = True
        self.subscriber.disconnect()
        self.subscriber.disconnect()
        self.client.disconnect.assert_called_once_with()
        self.client.loop_stop.assert_called_once_with()

    def test_acknowledge(self):
        """Test a QoS 1 message is acked on its connection"""
        self.client.connect.side_effect = self.answer_connect()
        self.subscriber.connect(build_session_policy(False))
        self.subscriber.start_consuming()
        self.subscriber._on_message(self.client, None, paho_message(mid=9, qos=1))
        self.subscriber.acknowledge(self.subscriber.receive(1.0))
        self.client.ack.assert_called_once_with(9, 1)

    def test_acknowledge_skips_qos0_and_stale(self):
        """Test QoS 0 and earlier-connection messages are not acked"""
        self.subscriber.acknowledge(IncomingMessage("t", b"", mid=1, qos=0))
        self.subscriber.acknowledge(IncomingMessage("t", b"", mid=2, qos=1, generation=5))
        self.client.ack.assert_not_called()

    def test_get_stats(self):
        """Test statistics report connection state and message count"""
        self.client.is_connected.return_value = False
        stats = self.subscriber.get_stats()
        self.assertEqual(stats, {
            "connected": False,
            "message_count": 0,
            "broker_uri": "tcp://broker:1883",
            "client_id": "mqtt2file-box-archive",
        })


if __name__ == "__main__":
    unittest.main()
