#!/usr/bin/env python3
"""
Collect messages from MQTT and write them to files.

Subscribes to everything below a topic prefix and saves each message payload
into a directory, named by the message's ``filename`` user property. Exits
once two consecutive waits pass without any message.
"""

import argparse
import logging
import math
import os
import signal
import sys
from pathlib import Path
from typing import List, Mapping, Optional

from config import Mqtt2FileConfig
from connection_manager import ConnectionManager
from consumer_loop import ConsumptionLoop, LoopOutcome, ShutdownToken
from message_persistence import MessagePersistenceHandler
from mqtt_subscriber import BrokerConnectionError, MQTTSubscriber, SubscriptionError
from reconnect import ReconnectSupervisor
from session import IdentityError, build_session_policy, create_client_identity

__version__ = "0.1.0"

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_RECONNECT_EXHAUSTED = 2

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
DEFAULT_LOG_LEVEL = 1

# One year; keeps the wait deadline representable as a datetime
MAX_TIMEOUT_MINUTES = 365 * 24 * 60


def _timeout_minutes(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from None
    if not math.isfinite(number) or number <= 0:
        raise argparse.ArgumentTypeError(f"must be a finite number greater than zero: {value}")
    if number > MAX_TIMEOUT_MINUTES:
        raise argparse.ArgumentTypeError(f"must be at most {MAX_TIMEOUT_MINUTES} minutes: {value}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mqtt2file",
        description="Collect messages from mqtt and write them to file",
    )
    parser.add_argument("topic_prefix", help="Prefix of topics to subscribe to")
    parser.add_argument("directory", help="Directory to save files into")
    parser.add_argument(
        "-u", "--uri", dest="mqtt_uri", default=Mqtt2FileConfig.BROKER_URI, help="MQTT server URI"
    )
    parser.add_argument(
        "-c", "--client-id-suffix", default="",
        help="Client ID suffix. When given, create a persistent session with the "
             "client id mqtt2file-<hostname>-<suffix>",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Control verbosity of logs. Can be repeated",
    )
    parser.add_argument(
        "-t", "--timeout", type=_timeout_minutes, default=Mqtt2FileConfig.IDLE_TIMEOUT_MINUTES,
        help="Set timeout value in minutes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def resolve_log_level(verbosity: int, environ: Mapping[str, str] = os.environ) -> int:
    """Map the -v count to a level; LOG_LEVEL in the environment wins."""
    level = LOG_LEVELS[min(DEFAULT_LOG_LEVEL + verbosity, len(LOG_LEVELS) - 1)]
    override = environ.get("LOG_LEVEL")
    if override:
        named = logging.getLevelName(override.strip().upper())
        if isinstance(named, int):
            return named
    return level


def configure_logging(verbosity: int, environ: Mapping[str, str] = os.environ) -> logging.Logger:
    logging.basicConfig(level=resolve_log_level(verbosity, environ), format=LOG_FORMAT)
    return logging.getLogger("mqtt2file")


def install_signal_handlers(shutdown: ShutdownToken):
    """^C and SIGTERM only cancel the token; the loop does the stopping."""
    def handle_signal(signum, frame):
        shutdown.cancel()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def main(argv: Optional[List[str]] = None, config: Optional[Mqtt2FileConfig] = None) -> int:
    args = parse_args(argv)
    logger = configure_logging(args.verbose)
    config = config or Mqtt2FileConfig()

    try:
        identity = create_client_identity(args.client_id_suffix, prefix=config.CLIENT_ID_PREFIX)
    except IdentityError as exc:
        logger.error(str(exc))
        return EXIT_STARTUP_FAILURE

    directory = Path(args.directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error(f"Unable to create directory {directory}: {exc}")
        return EXIT_STARTUP_FAILURE

    try:
        subscriber = MQTTSubscriber(
            identity, args.mqtt_uri, config, logger=logger.getChild("mqtt")
        )
    except ValueError as exc:
        logger.error(str(exc))
        return EXIT_STARTUP_FAILURE

    policy = build_session_policy(identity.wants_persistent_session, config.SESSION_EXPIRY)
    manager = ConnectionManager(
        subscriber, identity, policy, args.topic_prefix, config.QOS,
        logger=logger.getChild("connection"),
    )

    shutdown = ShutdownToken()
    install_signal_handlers(shutdown)

    # Initialize the consumer before connecting, a resumed session
    # may start delivering right after the CONNACK
    subscriber.start_consuming()
    try:
        manager.establish()
    except (BrokerConnectionError, SubscriptionError) as exc:
        logger.error(str(exc))
        manager.shutdown()
        return EXIT_STARTUP_FAILURE

    supervisor = ReconnectSupervisor(
        manager.reestablish,
        attempts=config.RECONNECT_ATTEMPTS,
        interval=config.RECONNECT_INTERVAL,
        logger=logger.getChild("reconnect"),
    )
    handler = MessagePersistenceHandler(
        directory, config.FILENAME_PROPERTY, logger=logger.getChild("persist")
    )
    loop = ConsumptionLoop(
        subscriber, handler, supervisor, args.timeout * 60, shutdown,
        logger=logger.getChild("loop"),
    )
    try:
        outcome = loop.run()
    finally:
        manager.shutdown()

    stats = subscriber.get_stats()
    logger.info(
        f"Received {stats['message_count']} messages, saved {handler.saved_count}, "
        f"failed {handler.failed_count}"
    )
    logger.info("Exiting")
    if outcome is LoopOutcome.RECONNECT_EXHAUSTED:
        return EXIT_RECONNECT_EXHAUSTED
    return EXIT_OK


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
