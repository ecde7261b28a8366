import logging
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from smarthome.core.config import Settings
from smarthome.core.errors import StoreUnavailable
from smarthome.services.clock import now_ms
from smarthome.services.firebase_store import FirebaseRestStore
from smarthome.services.home_state import HomeStateService
from smarthome.services.notifier import ChangeNotifier
from smarthome.services.presence import PresenceTracker
from smarthome.services.reconciler import TimerReconciler
from smarthome.services.store import DocumentStore, SqlDocumentStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings, session_factory: sessionmaker) -> DocumentStore:
    backend = settings.store_backend.strip().lower()
    if backend == "firebase":
        return FirebaseRestStore(
            settings.firebase_database_url,
            auth_token=settings.firebase_auth_token,
            timeout=settings.store_timeout,
        )
    if backend != "sql":
        raise ValueError("STORE_BACKEND must be either 'sql' or 'firebase'")
    return SqlDocumentStore(session_factory, poll_interval=settings.store_poll_interval)


class HomeRuntime:
    """Everything one server process needs, wired together."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        clock: Callable[[], int] = now_ms,
        scheduler: Any = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = ChangeNotifier(store, settings.store_root, reconnect_delay=settings.notifier_reconnect_delay)
        self.reconciler = TimerReconciler(
            store,
            settings.store_root,
            clock=clock,
            scheduler=scheduler,
            min_seconds=settings.timer_min_seconds,
            max_seconds=settings.timer_max_seconds,
        )
        self.presence = PresenceTracker(
            timeout_ms=settings.presence_timeout_ms,
            check_interval=settings.presence_check_interval,
            clock=clock,
        )
        self.state = HomeStateService(store, settings.store_root, self.reconciler)
        self.notifier.add_consumer(self.reconciler.on_snapshot, self._on_reconnecting)
        self.started = False

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker) -> "HomeRuntime":
        return cls(build_store(settings, session_factory), settings)

    def _on_reconnecting(self, exc: StoreUnavailable) -> None:
        logger.info("State feed reconnecting: %s", exc)

    def start(self) -> None:
        if self.started:
            return
        try:
            self.state.initialize()
        except StoreUnavailable as exc:
            logger.error("[DB] Init error: %s", exc)
        self.notifier.start()
        self.presence.start()
        self.started = True
        logger.info("Home state runtime started (store root: %s)", self.settings.store_root)

    def stop(self) -> None:
        if not self.started:
            return
        self.presence.stop()
        self.notifier.stop()
        self.store.close()
        self.started = False
        logger.info("Home state runtime stopped")
