"""Key-path document store adapters.

Paths are slash separated (``smartHomeState/timer``). The first segment names a
root document; the rest walks into its JSON body. Writing ``None`` removes the
key, the same way the realtime database the firmware talks to behaves.
"""

import copy
import logging
import threading
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from smarthome.core.errors import StoreTimeout, StoreUnavailable
from smarthome.crud import document_crud

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Any], None]
ErrorCallback = Callable[[StoreUnavailable], None]

WRITE_ATTEMPTS = 5


def split_path(path: str) -> list[str]:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts:
        raise ValueError("store path must name at least a root key")
    return parts


def get_in(body: Any, parts: list[str]) -> Any:
    node = body
    for part in parts:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def prune_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: prune_nulls(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [prune_nulls(item) for item in value]
    return value


def set_in(body: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of ``body`` with ``value`` placed at ``parts``."""
    if not parts:
        return prune_nulls(value)

    root = copy.deepcopy(body) if isinstance(body, dict) else {}
    node = root
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if value is None:
                return root
            child = {}
            node[part] = child
        node = child

    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = prune_nulls(value)
    return root


def merge_fields(current: Any, fields: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(current) if isinstance(current, dict) else {}
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = prune_nulls(value)
    return merged


def paths_overlap(left: list[str], right: list[str]) -> bool:
    shortest = min(len(left), len(right))
    return left[:shortest] == right[:shortest]


class Subscription:
    """Handle returned by ``subscribe``; ``close()`` stops further deliveries."""

    def __init__(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> None:
        self.path = path
        self.parts = split_path(path)
        self.on_change = on_change
        self.on_error = on_error
        self.closed = threading.Event()

    @property
    def active(self) -> bool:
        return not self.closed.is_set()

    def close(self) -> None:
        self.closed.set()

    def deliver(self, value: Any) -> None:
        if self.active:
            self.on_change(value)

    def fail(self, exc: StoreUnavailable) -> None:
        if self.active:
            self.close()
            self.on_error(exc)


class DocumentStore:
    """Contract the core relies on. Failures surface as ``StoreUnavailable``."""

    def read(self, path: str) -> Any:
        raise NotImplementedError

    def write(self, path: str, value: Any) -> None:
        raise NotImplementedError

    def merge(self, path: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        raise NotImplementedError

    def close(self) -> None:
        pass


class SqlDocumentStore(DocumentStore):
    """Document store kept in one SQLAlchemy row per root key.

    Every local write is re-delivered to local subscribers once committed.
    Writes made by other processes sharing the database reach subscribers
    through a revision poll, when ``poll_interval`` is positive.
    """

    def __init__(self, session_factory: sessionmaker, poll_interval: float = 0.0) -> None:
        self._session_factory = session_factory
        self._poll_interval = poll_interval
        self._lock = threading.RLock()
        self._subscriptions: list[Subscription] = []
        self._revisions: dict[int, int] = {}

    def _call(self, operation: Callable[[Session], Any]) -> Any:
        try:
            with self._session_factory() as db:
                return operation(db)
        except SQLAlchemyTimeoutError as exc:
            raise StoreTimeout(f"Document store timed out: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Document store unavailable: {exc}") from exc

    def _read_root(self, db: Session, root: str) -> tuple[Any, int]:
        node = document_crud.get(db, root)
        if node is None:
            return None, 0
        return node.body, node.revision

    def read(self, path: str) -> Any:
        parts = split_path(path)

        def operation(db: Session) -> Any:
            body, _ = self._read_root(db, parts[0])
            return copy.deepcopy(get_in(body, parts[1:]))

        return self._call(operation)

    def write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        self._commit(parts, lambda body: set_in(body, parts[1:], value))

    def merge(self, path: str, fields: dict[str, Any]) -> None:
        parts = split_path(path)
        self._commit(parts, lambda body: set_in(body, parts[1:], merge_fields(get_in(body, parts[1:]), fields)))

    def _update_root(self, root: str, change: Callable[[Any], Any]) -> int:
        """Read-modify-write of one root row, retried when a peer commits in between."""

        def operation(db: Session) -> int:
            for _ in range(WRITE_ATTEMPTS):
                body, revision = self._read_root(db, root)
                committed = document_crud.compare_and_put(db, root, change(body), revision)
                if committed is not None:
                    return committed
                logger.debug("Revision %s of %s changed underneath, retrying", revision, root)
            raise StoreUnavailable(f"Document {root} kept changing, gave up after {WRITE_ATTEMPTS} attempts")

        return self._call(operation)

    def _commit(self, parts: list[str], change: Callable[[Any], Any]) -> None:
        with self._lock:
            revision = self._update_root(parts[0], change)
            for subscription in list(self._subscriptions):
                if not subscription.active:
                    self._drop(subscription)
                    continue
                if not paths_overlap(subscription.parts, parts):
                    continue
                self._revisions[id(subscription)] = revision
                try:
                    value = self.read(subscription.path)
                except StoreUnavailable as exc:
                    self._drop(subscription)
                    subscription.fail(exc)
                    continue
                subscription.deliver(value)

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        subscription = Subscription(path, on_change, on_error)
        root = subscription.parts[0]
        revision = self._call(lambda db: document_crud.get_revision(db, root))
        with self._lock:
            self._subscriptions.append(subscription)
            self._revisions[id(subscription)] = revision

        if self._poll_interval > 0:
            thread = threading.Thread(
                target=self._poll,
                args=(subscription,),
                name=f"store-poll-{root}",
                daemon=True,
            )
            thread.start()
        return subscription

    def _poll(self, subscription: Subscription) -> None:
        root = subscription.parts[0]
        while not subscription.closed.wait(self._poll_interval):
            try:
                with self._lock:
                    revision = self._call(lambda db: document_crud.get_revision(db, root))
                    if revision == self._revisions.get(id(subscription)):
                        continue
                    self._revisions[id(subscription)] = revision
                    value = self.read(subscription.path)
            except StoreUnavailable as exc:
                logger.warning("Polling %s failed: %s", subscription.path, exc)
                with self._lock:
                    self._drop(subscription)
                subscription.fail(exc)
                return
            subscription.deliver(value)

    def _drop(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        self._revisions.pop(id(subscription), None)

    def close(self) -> None:
        with self._lock:
            for subscription in self._subscriptions:
                subscription.close()
            self._subscriptions.clear()
            self._revisions.clear()
