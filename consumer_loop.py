import enum
import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from mqtt_subscriber import Delivery, Disconnected, IncomingMessage
from reconnect import ReconnectResult, ReconnectSupervisor


class ConsumptionPhase(enum.Enum):
    DRAINING = "draining"
    IDLE = "idle"
    STOPPED = "stopped"


class LoopOutcome(enum.Enum):
    GRACEFUL = "graceful"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"


class ShutdownToken:
    """Cancellation token set by an operator shutdown request.

    Setting it is the only thing a signal handler does; the loop and the
    message source poll it.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


class MessageSource(Protocol):
    def receive(self, timeout: float, cancel=None) -> Delivery: ...

    def stop_consuming(self) -> None: ...

    def acknowledge(self, message: IncomingMessage) -> None: ...

    def is_connected(self) -> bool: ...


class ConsumptionLoop:
    """Reads messages until two consecutive waits of ``timeout`` come back empty.

    A first silent wait moves the loop from DRAINING to IDLE and stops the
    message source; a second one stops the loop. Any message seen while IDLE
    moves it back to DRAINING. A lost connection goes to the reconnect
    supervisor, and the loop stops if reconnecting fails.
    """

    def __init__(
        self,
        source: MessageSource,
        handler: Callable[[IncomingMessage], bool],
        supervisor: ReconnectSupervisor,
        timeout: float,
        shutdown: Optional[ShutdownToken] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError(f"timeout must be a finite number of seconds greater than zero: {timeout}")
        self.source = source
        self.handler = handler
        self.supervisor = supervisor
        self.timeout = timeout
        self.shutdown = shutdown or ShutdownToken()
        self.logger = logger or logging.getLogger(__name__)
        self.phase = ConsumptionPhase.DRAINING
        self.outcome: Optional[LoopOutcome] = None

    def run(self) -> LoopOutcome:
        self.phase = ConsumptionPhase.DRAINING
        self.outcome = None
        while self.phase is not ConsumptionPhase.STOPPED:
            self.step()
        return self.outcome

    def step(self) -> ConsumptionPhase:
        """Wait for one delivery and advance the state machine."""
        try:
            delay = timedelta(seconds=self.timeout)
            deadline = f"{datetime.now() + delay:%Y-%m-%d %H:%M:%S}"
        except OverflowError:
            delay, deadline = f"{self.timeout}s", "the far future"
        self.logger.info(f"Waiting for messages until {deadline}...")
        self.logger.debug(f"   that means {delay}")

        delivery = self.source.receive(self.timeout, cancel=self.shutdown)
        if delivery is None:
            self._on_timeout()
        elif isinstance(delivery, Disconnected):
            self._on_disconnect()
        else:
            self._on_message(delivery)
        return self.phase

    def _on_message(self, message: IncomingMessage):
        self.handler(message)
        self.source.acknowledge(message)
        if self.phase is ConsumptionPhase.IDLE:
            self.logger.debug("Message received while idle, back to draining")
        self.phase = ConsumptionPhase.DRAINING

    def _on_disconnect(self):
        if self.source.is_connected():
            self.logger.debug("Stale disconnect notification, connection is up")
            return
        self.logger.debug("Disconnected, trying reconnect")
        result = self.supervisor.run()
        if result is ReconnectResult.RECONNECTED and self.source.is_connected():
            self.phase = ConsumptionPhase.DRAINING
            return
        self._stop(LoopOutcome.RECONNECT_EXHAUSTED)

    def _on_timeout(self):
        if self.phase is ConsumptionPhase.DRAINING:
            if self.shutdown.is_set():
                self.logger.info("Shutdown requested, stopping consumption")
            self.logger.debug("Timed out; Stop consumer thread and do a second poll for more messages")
            self.source.stop_consuming()
            self.phase = ConsumptionPhase.IDLE
        else:
            self.logger.debug("Received second timeout, breaking out")
            self._stop(LoopOutcome.GRACEFUL)

    def _stop(self, outcome: LoopOutcome):
        self.phase = ConsumptionPhase.STOPPED
        self.outcome = outcome
