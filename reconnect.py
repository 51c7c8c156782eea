import enum
import logging
import time
from typing import Any, Callable, Optional

from config import Mqtt2FileConfig
from mqtt_subscriber import BrokerConnectionError, SubscriptionError


class ReconnectResult(enum.Enum):
    RECONNECTED = "reconnected"
    EXHAUSTED = "exhausted"


class ReconnectSupervisor:
    """Retries a lost connection a fixed number of times at a fixed interval.

    Blocking and linear: no backoff growth, no jitter. Callers that need a
    different policy wrap this one.
    """

    def __init__(
        self,
        reconnect: Callable[[], Any],
        attempts: int = Mqtt2FileConfig.RECONNECT_ATTEMPTS,
        interval: float = Mqtt2FileConfig.RECONNECT_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.reconnect = reconnect
        self.attempts = attempts
        self.interval = interval
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def run(self) -> ReconnectResult:
        self.logger.warning("Connection lost. Waiting to retry connection")
        for attempt in range(1, self.attempts + 1):
            self.sleep(self.interval)
            try:
                self.reconnect()
            except (BrokerConnectionError, SubscriptionError) as exc:
                self.logger.info(f"Reconnect attempt {attempt}/{self.attempts} failed: {exc}")
                continue
            self.logger.info("Successfully reconnected")
            return ReconnectResult.RECONNECTED
        self.logger.error("Unable to reconnect after several attempts.")
        return ReconnectResult.EXHAUSTED
