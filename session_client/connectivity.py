import logging
import threading
from typing import Callable, Optional

import requests

from shared.channels import Channel

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Tracks whether the device is connected AND the internet is reachable.

    The embedding shell reports transitions with set_online(); when a probe URL
    is configured, start() also runs a background polling thread.
    Subscribers are only called when the value actually changes.
    """

    def __init__(
        self,
        probe_url: str = None,
        poll_interval: float = 5.0,
        timeout: float = 3.0,
        initial_online: bool = True,
        session: requests.Session = None
    ):
        self.probe_url = probe_url
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.session = session or requests.Session()
        self.changes: Channel[bool] = Channel("connectivity")
        self._online = initial_online
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, handler: Callable[[bool], None]) -> Callable[[], None]:
        return self.changes.subscribe(handler)

    def set_online(self, connected: bool, internet_reachable: Optional[bool] = True):
        online = bool(connected) and internet_reachable is not False

        with self._lock:
            if online == self._online:
                return
            self._online = online

        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self.changes.publish(online)

    def probe(self) -> bool:
        """One reachability check; any HTTP response counts as reachable."""
        if not self.probe_url:
            return self._online
        try:
            self.session.head(self.probe_url, timeout=self.timeout)
            return True
        except requests.exceptions.RequestException:
            return False

    def start(self):
        if not self.probe_url or self.poll_interval <= 0 or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()

    def _poll_loop(self):
        while not self._stop.is_set():
            self.set_online(self.probe())
            self._stop.wait(self.poll_interval)

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.timeout + 1)
            self._thread = None
