import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from smarthome.core.devices import DEVICE_IDS

logger = logging.getLogger(__name__)

Mode = Literal["normal", "wave", "pulse", "disco"]
TimerAction = Literal["on", "off"]

MODES: tuple[str, ...] = ("normal", "wave", "pulse", "disco")
TIMER_ACTIONS: tuple[str, ...] = ("on", "off")

KILL_KEY = "kill"
MODE_KEY = "mode"
TIMER_KEY = "timer"


class TimerRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    devices: list[str] = Field(..., min_length=1)
    action: TimerAction
    duration: int
    started_at: int = Field(..., alias="startedAt")
    ends_at: int = Field(..., alias="endsAt")
    active: bool = True

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.ends_at - now_ms)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class StateDocument(BaseModel):
    """Parsed view of the shared home state document.

    The stored layout is flat: one boolean per device id next to ``mode``,
    ``kill`` and ``timer``. Firmware and browser peers read that layout
    directly, so it is kept as is and only mapped here.
    """

    device_outputs: dict[str, bool] = Field(default_factory=lambda: {device_id: False for device_id in DEVICE_IDS})
    mode: Mode = "normal"
    kill_switch: bool = False
    timer: TimerRecord | None = None

    @classmethod
    def from_wire(cls, raw: Any) -> "StateDocument":
        if not isinstance(raw, dict):
            return cls()

        mode = raw.get(MODE_KEY, "normal")
        if mode not in MODES:
            logger.warning("Unknown mode %r in stored state, reading it as normal", mode)
            mode = "normal"

        return cls(
            device_outputs={device_id: bool(raw.get(device_id, False)) for device_id in DEVICE_IDS},
            mode=mode,
            kill_switch=bool(raw.get(KILL_KEY, False)),
            timer=parse_timer(raw.get(TIMER_KEY)),
        )

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = dict(self.device_outputs)
        wire[MODE_KEY] = self.mode
        wire[KILL_KEY] = self.kill_switch
        wire[TIMER_KEY] = self.timer.to_wire() if self.timer else None
        return wire

    def physical_outputs(self) -> dict[str, bool]:
        """What the hardware should actually drive: the kill switch wins over everything."""
        if self.kill_switch:
            return {device_id: False for device_id in self.device_outputs}
        return dict(self.device_outputs)


def parse_timer(raw: Any) -> TimerRecord | None:
    if not isinstance(raw, dict):
        return None
    try:
        return TimerRecord.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("Ignoring malformed timer record: %s", exc)
        return None


def default_state() -> StateDocument:
    return StateDocument()
