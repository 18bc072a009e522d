"""Cooperative shutdown signal shared by the pipeline and retry waits."""

import logging
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """Wraps a threading.Event.

    Backoff waits block on the event, so a shutdown request interrupts them
    immediately instead of sleeping out the delay.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def request(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to `timeout` seconds; True if shutdown was requested."""
        return self._event.wait(timeout)

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to this signal (main thread only)."""

        def _handler(signum, frame):
            logger.warning("Received %s; finishing current unit of work", signal.Signals(signum).name)
            self.request()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
