from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class TimerStartRequest(BaseModel):
    devices: Any = Field(default_factory=list)
    duration_seconds: Any = Field(default=None, validation_alias=AliasChoices("durationSeconds", "duration"))
    action: Any = None


class TimerStartResponse(BaseModel):
    success: bool
    timerId: str
    devices: list[str]
    duration: int
    action: str
    endsAt: int


class HeartbeatIn(BaseModel):
    address: str | None = Field(default=None, validation_alias=AliasChoices("address", "ip"))
    signal_strength: int | None = Field(default=None, validation_alias=AliasChoices("signalStrength", "rssi"))
    uptime: int | None = None
    free_memory: int | None = Field(default=None, validation_alias=AliasChoices("freeMemory", "freeHeap"))


class HeartbeatResponse(BaseModel):
    ok: bool
    serverTime: int
