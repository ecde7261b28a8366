from smarthome.schemas.control import HeartbeatIn, HeartbeatResponse, TimerStartRequest, TimerStartResponse
from smarthome.schemas.state import (
    MODES,
    TIMER_ACTIONS,
    Mode,
    StateDocument,
    TimerAction,
    TimerRecord,
    default_state,
    parse_timer,
)

__all__ = [
    "HeartbeatIn",
    "HeartbeatResponse",
    "MODES",
    "Mode",
    "StateDocument",
    "TIMER_ACTIONS",
    "TimerAction",
    "TimerRecord",
    "TimerStartRequest",
    "TimerStartResponse",
    "default_state",
    "parse_timer",
]
