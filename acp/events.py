import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckRequest:
    source: str
    interface: str = ""


def offer(signals: "queue.Queue[CheckRequest]", request: CheckRequest) -> bool:
    """Enqueue without blocking; a full queue drops the request."""
    try:
        signals.put_nowait(request)
    except queue.Full:
        logger.warning("Signal queue full, dropping %s request", request.source)
        return False
    return True


class EventBridge:
    """Collapses bursts of interface notifications into one check request."""

    def __init__(
        self,
        signals: "queue.Queue[CheckRequest]",
        debounce_seconds: float = 3.0,
    ) -> None:
        self.signals = signals
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending_interface = ""
        self._closed = False
        self.emitted = 0

    def notify(self, interface: str = "") -> None:
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._pending_interface = interface
            self._timer = threading.Timer(self.debounce_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._closed or self._timer is None:
                return
            if threading.current_thread() is not self._timer:
                return
            self._timer = None
            interface = self._pending_interface
        logger.info("Network change settled on %s, requesting check", interface or "unknown interface")
        if offer(self.signals, CheckRequest(source="network", interface=interface)):
            self.emitted += 1

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


Snapshot = Dict[str, FrozenSet[str]]


def snapshot_interfaces() -> Snapshot:
    result: Snapshot = {}
    for name, addresses in psutil.net_if_addrs().items():
        result[name] = frozenset(
            addr.address
            for addr in addresses
            if addr.family in (socket.AF_INET, socket.AF_INET6) and addr.address
        )
    return result


def relevant_changes(previous: Snapshot, current: Snapshot) -> list[str]:
    """Interfaces that appeared or gained an address. Removals are ignored."""
    changed = []
    for name, addresses in current.items():
        before = previous.get(name)
        if before is None or addresses - before:
            changed.append(name)
    return sorted(changed)


class InterfaceWatcher:
    """Polls the interface list and reports additions to a callback."""

    def __init__(
        self,
        on_change: Callable[[str], None],
        stop_event: threading.Event,
        poll_seconds: float = 2.0,
        snapshot: Callable[[], Snapshot] = snapshot_interfaces,
    ) -> None:
        self.on_change = on_change
        self.stop_event = stop_event
        self.poll_seconds = poll_seconds
        self.snapshot = snapshot
        self._thread: Optional[threading.Thread] = None

    def poll_once(self, previous: Optional[Snapshot]) -> Snapshot:
        current = self.snapshot()
        if previous is None:
            logger.info("Interface watcher initialized with %d interfaces", len(current))
            return current
        changed = relevant_changes(previous, current)
        for name in changed:
            logger.info("Relevant network change on %s", name)
            self.on_change(name)
        if not changed and previous != current:
            logger.debug("Ignoring interface or address removal")
        return current

    def _run(self) -> None:
        previous: Optional[Snapshot] = None
        while not self.stop_event.is_set():
            try:
                previous = self.poll_once(previous)
            except (OSError, psutil.Error) as exc:
                logger.warning("Interface poll failed: %s", exc)
            self.stop_event.wait(self.poll_seconds)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name="acp-interface-watcher", daemon=True
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
