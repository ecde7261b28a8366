import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from smarthome.core.devices import resolve_schedulable
from smarthome.core.errors import StoreUnavailable, ValidationError
from smarthome.schemas.state import KILL_KEY, TIMER_ACTIONS, TIMER_KEY, StateDocument, TimerRecord, parse_timer
from smarthome.services.clock import Cancellable, ThreadingScheduler, now_ms
from smarthome.services.store import DocumentStore

logger = logging.getLogger(__name__)

IDLE = "idle"
ARMED = "armed"


@dataclass
class ArmedCountdown:
    timer_id: str
    fire_at: int
    handle: Cancellable


class TimerReconciler:
    """Turns the persisted timer record into exactly one local countdown.

    Deadlines are stored as absolute timestamps, so any process (including
    one started in the middle of a countdown) can work out how long is left.
    Every transition runs under ``_lock``; countdown callbacks fire on timer
    threads and re-enter through that lock.
    """

    def __init__(
        self,
        store: DocumentStore,
        root: str,
        clock: Callable[[], int] = now_ms,
        scheduler: Any = None,
        min_seconds: int = 1,
        max_seconds: int = 86400,
    ) -> None:
        self.store = store
        self.root = root
        self.clock = clock
        self.scheduler = scheduler or ThreadingScheduler()
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._lock = threading.Lock()
        self._armed: ArmedCountdown | None = None

    @property
    def timer_path(self) -> str:
        return f"{self.root}/{TIMER_KEY}"

    @property
    def state(self) -> str:
        return ARMED if self._armed else IDLE

    @property
    def armed(self) -> ArmedCountdown | None:
        return self._armed

    def _new_id(self, now: int) -> str:
        return f"timer_{now}_{uuid.uuid4().hex[:6]}"

    def _validate_duration(self, duration_seconds: Any) -> int:
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
            raise ValidationError(
                f"duration must be between {self.min_seconds} and {self.max_seconds} seconds"
            )
        if not (self.min_seconds <= duration_seconds <= self.max_seconds) or duration_seconds != int(
            duration_seconds
        ):
            raise ValidationError(
                f"duration must be a whole number between {self.min_seconds} and {self.max_seconds} seconds"
            )
        return int(duration_seconds)

    def schedule(self, devices: Any, duration_seconds: Any, action: Any) -> TimerRecord:
        """Validate a request and persist it as the one outstanding timer."""
        if not isinstance(devices, list):
            raise ValidationError("devices must be a non-empty array of device ids")
        targets = resolve_schedulable(devices)
        duration = self._validate_duration(duration_seconds)
        if action not in TIMER_ACTIONS:
            raise ValidationError("action must be 'on' or 'off'")

        with self._lock:
            now = self.clock()
            record = TimerRecord(
                id=self._new_id(now),
                devices=targets,
                action=action,
                duration=duration,
                started_at=now,
                ends_at=now + duration * 1000,
                active=True,
            )
            try:
                self.store.write(self.timer_path, record.to_wire())
            except StoreUnavailable:
                # the previous record is still persisted, so its countdown stays armed
                logger.error("Could not persist timer %s", record.id)
                raise
            self._disarm()

        logger.info("Timer %s scheduled: %s [%s] in %ss", record.id, action, ",".join(targets), duration)
        return record

    def cancel(self) -> None:
        with self._lock:
            self.store.write(self.timer_path, None)
            self._disarm()
        logger.info("Timer cancelled")

    def on_snapshot(self, snapshot: StateDocument | None) -> None:
        timer = snapshot.timer if snapshot else None

        with self._lock:
            if timer is None or not timer.active:
                if self._armed:
                    logger.info("Timer %s cleared elsewhere, disarming", self._armed.timer_id)
                    self._disarm()
                return

            if self._armed and self._armed.timer_id == timer.id:
                return

            self._disarm()
            remaining = timer.remaining_ms(self.clock())
            if remaining == 0:
                logger.info("Timer %s already expired, executing now", timer.id)
                self._execute(timer.id)
                return

            handle = self.scheduler.call_later(remaining / 1000, lambda: self._on_countdown(timer.id))
            self._armed = ArmedCountdown(timer_id=timer.id, fire_at=timer.ends_at, handle=handle)
            logger.info("Timer %s armed, firing in %sms", timer.id, remaining)

    def _on_countdown(self, timer_id: str) -> None:
        with self._lock:
            if self._armed is None or self._armed.timer_id != timer_id:
                logger.debug("Countdown for superseded timer %s ignored", timer_id)
                return
            self._armed = None
            self._execute(timer_id)

    def _disarm(self) -> None:
        if self._armed is not None:
            self._armed.handle.cancel()
            self._armed = None

    def _execute(self, timer_id: str) -> None:
        """Apply the timer's action if it is still the persisted one; best effort."""
        try:
            current = parse_timer(self.store.read(self.timer_path))
            if current is None or not current.active or current.id != timer_id:
                logger.debug("Timer %s is no longer current, nothing to do", timer_id)
                return

            turn_on = current.action == "on"
            updates: dict[str, Any] = {device_id: turn_on for device_id in current.devices}
            if turn_on:
                updates[KILL_KEY] = False
            updates[TIMER_KEY] = None
            self.store.merge(self.root, updates)
        except StoreUnavailable as exc:
            logger.error("Timer %s could not be executed: %s", timer_id, exc)
            return

        logger.info("Timer %s executed: %s [%s]", timer_id, current.action, ",".join(current.devices))

    def timer_status(self) -> dict[str, Any]:
        return self.describe(parse_timer(self.store.read(self.timer_path)))

    def describe(self, timer: TimerRecord | None) -> dict[str, Any]:
        """Timer as reported to clients; an expired record counts as no timer."""
        if timer is None or not timer.active:
            return {"active": False}

        remaining = timer.remaining_ms(self.clock())
        if remaining == 0:
            return {"active": False}
        return {**timer.to_wire(), "remainingMs": remaining, "remaining": -(-remaining // 1000)}
