import logging
import queue
import threading
from typing import Any, Callable

from smarthome.core.errors import StoreUnavailable
from smarthome.schemas.state import StateDocument
from smarthome.services.store import DocumentStore, Subscription

logger = logging.getLogger(__name__)

SnapshotConsumer = Callable[[StateDocument | None], None]
ReconnectConsumer = Callable[[StoreUnavailable], None]

SNAPSHOT = "snapshot"
RECONNECTING = "reconnecting"
_STOP = object()


class SnapshotFeed:
    """Queue of notifier events for one remote reader (an SSE client, a peer)."""

    def __init__(self, notifier: "ChangeNotifier", maxsize: int = 100) -> None:
        self._notifier = notifier
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def push(self, kind: str, payload: Any) -> None:
        try:
            self._queue.put_nowait((kind, payload))
        except queue.Full:
            # a slow reader only needs the newest full snapshot
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait((kind, payload))

    def get(self, timeout: float | None = None) -> tuple[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def poll(self) -> tuple[str, Any] | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self._notifier.close_feed(self)


class ChangeNotifier:
    """Fans out full state snapshots to local consumers.

    Deliveries run on a single worker thread in the order the store reports
    them. A failed subscription is announced to consumers as "reconnecting"
    and re-established after ``reconnect_delay`` seconds; the first delivery
    after that is a fresh full snapshot.
    """

    def __init__(self, store: DocumentStore, path: str, reconnect_delay: float = 1.0) -> None:
        self.store = store
        self.path = path
        self.reconnect_delay = reconnect_delay
        self.latest: StateDocument | None = None
        self._consumers: list[tuple[SnapshotConsumer, ReconnectConsumer | None]] = []
        self._feeds: list[SnapshotFeed] = []
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._subscription: Subscription | None = None
        self._worker: threading.Thread | None = None
        self._retry: threading.Timer | None = None
        self._running = False

    def add_consumer(self, on_snapshot: SnapshotConsumer, on_reconnecting: ReconnectConsumer | None = None) -> None:
        with self._lock:
            self._consumers.append((on_snapshot, on_reconnecting))

    def open_feed(self) -> SnapshotFeed:
        feed = SnapshotFeed(self)
        with self._lock:
            self._feeds.append(feed)
            latest = self.latest
        if latest is not None:
            feed.push(SNAPSHOT, latest)
        return feed

    def close_feed(self, feed: SnapshotFeed) -> None:
        with self._lock:
            if feed in self._feeds:
                self._feeds.remove(feed)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = threading.Thread(target=self._run, name="change-notifier", daemon=True)
        self._worker.start()
        self._resubscribe()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        with self._lock:
            if self._retry is not None:
                self._retry.cancel()
                self._retry = None
            if self._subscription is not None:
                self._subscription.close()
                self._subscription = None
        self._queue.put(_STOP)
        if self._worker is not None:
            self._worker.join(timeout=5)
            self._worker = None

    def flush(self) -> None:
        """Block until every queued delivery, and whatever it caused, is handled."""
        self._queue.join()

    def _resubscribe(self) -> None:
        if not self._running:
            return
        try:
            subscription = self.store.subscribe(self.path, self._on_change, self._on_error)
            current = self.store.read(self.path)
        except StoreUnavailable as exc:
            logger.warning("Subscribing to %s failed: %s", self.path, exc)
            self._queue.put((RECONNECTING, exc))
            self._schedule_retry()
            return

        with self._lock:
            previous, self._subscription = self._subscription, subscription
        if previous is not None:
            previous.close()
        logger.info("Subscribed to %s", self.path)
        self._queue.put((SNAPSHOT, current))

    def _schedule_retry(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._retry = threading.Timer(self.reconnect_delay, self._resubscribe)
            self._retry.daemon = True
            self._retry.start()

    def _on_change(self, value: Any) -> None:
        self._queue.put((SNAPSHOT, value))

    def _on_error(self, exc: StoreUnavailable) -> None:
        logger.warning("Subscription to %s lost, reconnecting: %s", self.path, exc)
        self._queue.put((RECONNECTING, exc))
        self._schedule_retry()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                kind, payload = item
                if kind == SNAPSHOT:
                    self._deliver(None if payload is None else StateDocument.from_wire(payload))
                else:
                    self._announce_reconnect(payload)
            finally:
                self._queue.task_done()

    def _deliver(self, snapshot: StateDocument | None) -> None:
        with self._lock:
            self.latest = snapshot
            consumers = list(self._consumers)
            feeds = list(self._feeds)

        for on_snapshot, _ in consumers:
            try:
                on_snapshot(snapshot)
            except Exception:
                logger.exception("State consumer %r failed", on_snapshot)
        for feed in feeds:
            feed.push(SNAPSHOT, snapshot)

    def _announce_reconnect(self, exc: StoreUnavailable) -> None:
        with self._lock:
            consumers = list(self._consumers)
            feeds = list(self._feeds)

        for _, on_reconnecting in consumers:
            if on_reconnecting is None:
                continue
            try:
                on_reconnecting(exc)
            except Exception:
                logger.exception("Reconnect consumer %r failed", on_reconnecting)
        for feed in feeds:
            feed.push(RECONNECTING, str(exc))
