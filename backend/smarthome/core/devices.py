"""The closed set of devices the home state document knows about."""

from dataclasses import dataclass
from typing import Literal

from smarthome.core.errors import ValidationError

DeviceKind = Literal["led", "appliance"]


@dataclass(frozen=True)
class Device:
    id: str
    label: str
    kind: DeviceKind
    schedulable: bool


DEVICES: tuple[Device, ...] = (
    Device(id="led1", label="LED 1", kind="led", schedulable=True),
    Device(id="led2", label="LED 2", kind="led", schedulable=True),
    Device(id="led3", label="LED 3", kind="led", schedulable=True),
    Device(id="tv", label="TV", kind="appliance", schedulable=False),
)

DEVICES_BY_ID: dict[str, Device] = {device.id: device for device in DEVICES}
DEVICE_IDS: tuple[str, ...] = tuple(DEVICES_BY_ID)
LED_IDS: tuple[str, ...] = tuple(device.id for device in DEVICES if device.kind == "led")


def get_device(device_id: str) -> Device:
    device = DEVICES_BY_ID.get(device_id)
    if device is None:
        raise ValidationError(f"Invalid device '{device_id}'. Use {', '.join(DEVICE_IDS)}.")
    return device


def resolve_schedulable(device_ids: list[str]) -> list[str]:
    """Validate timer targets and drop duplicates, keeping request order."""
    if not device_ids:
        raise ValidationError("devices must be a non-empty array of device ids")

    allowed = [device.id for device in DEVICES if device.schedulable]
    resolved: list[str] = []
    for device_id in device_ids:
        device = DEVICES_BY_ID.get(device_id) if isinstance(device_id, str) else None
        if device is None or not device.schedulable:
            raise ValidationError(f"Invalid device names. Use {', '.join(allowed)}.")
        if device.id not in resolved:
            resolved.append(device.id)
    return resolved
