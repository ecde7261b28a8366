import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable

from smarthome.services.clock import now_ms

logger = logging.getLogger(__name__)


@dataclass
class PresenceStatus:
    online: bool = False
    last_seen: int | None = None
    address: str | None = None
    signal_strength: int | None = None
    uptime: int | None = None
    free_memory: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "online": data["online"],
            "lastSeen": data["last_seen"],
            "address": data["address"],
            "signalStrength": data["signal_strength"],
            "uptime": data["uptime"],
            "freeMemory": data["free_memory"],
        }


class PresenceTracker:
    """Heartbeat timeout detector for the hardware peer.

    Starts offline. A heartbeat marks it online; the background tick, or any
    status read, marks it offline again once ``timeout_ms`` passes without one.
    """

    def __init__(
        self,
        timeout_ms: int = 30000,
        check_interval: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.check_interval = check_interval
        self.clock = clock
        self._status = PresenceStatus()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def heartbeat(
        self,
        address: str | None = None,
        signal_strength: int | None = None,
        uptime: int | None = None,
        free_memory: int | None = None,
    ) -> int:
        now = self.clock()
        with self._lock:
            was_online = self._status.online
            self._status = PresenceStatus(
                online=True,
                last_seen=now,
                address=address,
                signal_strength=signal_strength,
                uptime=uptime,
                free_memory=free_memory,
            )
        if not was_online:
            logger.info("Hardware peer online (%s)", address or "unknown address")
        return now

    def check(self) -> bool:
        now = self.clock()
        with self._lock:
            status = self._status
            if status.online and status.last_seen is not None and now - status.last_seen > self.timeout_ms:
                status.online = False
                logger.warning("Hardware peer offline, last seen %sms ago", now - status.last_seen)
            return status.online

    def status(self) -> PresenceStatus:
        self.check()
        with self._lock:
            return PresenceStatus(**asdict(self._status))

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="presence-tick", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stopped.wait(self.check_interval):
            self.check()
