import logging
from typing import Any

from smarthome.core.devices import DEVICE_IDS, LED_IDS, get_device
from smarthome.core.errors import ValidationError
from smarthome.schemas.state import KILL_KEY, MODE_KEY, MODES, TIMER_KEY, StateDocument, default_state
from smarthome.services.presence import PresenceTracker
from smarthome.services.reconciler import TimerReconciler
from smarthome.services.store import DocumentStore

logger = logging.getLogger(__name__)


def _with_kill_cleared(updates: dict[str, Any]) -> dict[str, Any]:
    """Turning anything on must never be silently suppressed by a stale kill flag."""
    if any(updates.get(device_id) is True for device_id in DEVICE_IDS):
        updates[KILL_KEY] = False
    return updates


class HomeStateService:
    def __init__(self, store: DocumentStore, root: str, reconciler: TimerReconciler) -> None:
        self.store = store
        self.root = root
        self.reconciler = reconciler

    def initialize(self) -> StateDocument:
        current = self.store.read(self.root)
        if current is None:
            self.store.write(self.root, default_state().to_wire())
            logger.info("Initialized default state under %s", self.root)
            return default_state()

        logger.info("Existing state found: %s", current)
        return StateDocument.from_wire(current)

    def snapshot(self) -> StateDocument:
        return StateDocument.from_wire(self.store.read(self.root))

    def set_device(self, device_id: str, on: bool) -> dict[str, Any]:
        device = get_device(device_id)
        updates = _with_kill_cleared({device.id: bool(on)})
        self.store.merge(self.root, updates)
        return updates

    def toggle_device(self, device_id: str) -> dict[str, Any]:
        device = get_device(device_id)
        current = self.store.read(f"{self.root}/{device.id}")
        return self.set_device(device.id, not bool(current))

    def set_mode(self, mode: str) -> dict[str, Any]:
        if mode not in MODES:
            raise ValidationError(f"Invalid mode. Use {', '.join(MODES)}.")
        updates: dict[str, Any] = {MODE_KEY: mode}
        if mode != "normal":
            # patterns drive outputs on
            updates[KILL_KEY] = False
        self.store.merge(self.root, updates)
        return updates

    def kill(self) -> dict[str, Any]:
        updates = {KILL_KEY: True}
        self.store.merge(self.root, updates)
        logger.warning("Kill switch engaged")
        return updates

    def all_on(self) -> dict[str, Any]:
        updates = _with_kill_cleared({device_id: True for device_id in LED_IDS})
        self.store.merge(self.root, updates)
        return updates

    def all_off(self) -> dict[str, Any]:
        updates = {device_id: False for device_id in LED_IDS}
        self.store.merge(self.root, updates)
        return updates

    def reset(self) -> StateDocument:
        state = default_state()
        self.store.write(self.root, state.to_wire())
        logger.info("State reset to defaults")
        return state

    def update(self, fields: dict[str, Any]) -> dict[str, Any]:
        if not fields:
            raise ValidationError("At least one field is required")

        updates: dict[str, Any] = {}
        for key, value in fields.items():
            if key == TIMER_KEY:
                raise ValidationError("timer can only be changed through the timer endpoints")
            if key in DEVICE_IDS or key == KILL_KEY:
                if not isinstance(value, bool):
                    raise ValidationError(f"{key} must be a boolean")
                updates[key] = value
            elif key == MODE_KEY:
                if value not in MODES:
                    raise ValidationError(f"Invalid mode. Use {', '.join(MODES)}.")
                updates[key] = value
            else:
                raise ValidationError(f"Unknown state field '{key}'")

        updates = _with_kill_cleared(updates)
        self.store.merge(self.root, updates)
        return updates

    def status(self, presence: PresenceTracker) -> dict[str, Any]:
        state = self.snapshot()
        return {
            "state": state.to_wire(),
            "outputs": state.physical_outputs(),
            "timer": self.reconciler.describe(state.timer),
            "presence": presence.status().to_dict(),
        }
