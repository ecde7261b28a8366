import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from smarthome.core.devices import DEVICES
from smarthome.core.errors import StoreUnavailable, ValidationError
from smarthome.schemas import HeartbeatIn, HeartbeatResponse, StateDocument, TimerStartRequest, TimerStartResponse
from smarthome.services import HomeRuntime, get_runtime
from smarthome.services.notifier import RECONNECTING

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_KEEPALIVE_SECONDS = 15
STREAM_POLL_SECONDS = 0.2


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        logger.error("Store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _sse(event: str, payload: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


@router.get("/health")
def health(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {
        "status": "ok",
        "store": runtime.settings.store_backend,
        "root": runtime.settings.store_root,
        "started": runtime.started,
    }


@router.get("/devices")
def list_devices() -> list[dict[str, Any]]:
    return [
        {"id": device.id, "label": device.label, "kind": device.kind, "schedulable": device.schedulable}
        for device in DEVICES
    ]


@router.get("/state")
def get_state(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        return runtime.state.snapshot().to_wire()


@router.post("/state")
def update_state(payload: dict[str, Any] = Body(...), runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        updated = runtime.state.update(payload)
    return {"success": True, "updated": updated}


@router.get("/state/stream")
def stream_state(runtime: HomeRuntime = Depends(get_runtime)) -> StreamingResponse:
    feed = runtime.notifier.open_feed()

    async def events() -> AsyncIterator[str]:
        # polled from the event loop so idle readers never hold a worker thread
        idle = 0.0
        try:
            while True:
                item = feed.poll()
                if item is None:
                    if idle >= STREAM_KEEPALIVE_SECONDS:
                        idle = 0.0
                        yield ": keep-alive\n\n"
                    await asyncio.sleep(STREAM_POLL_SECONDS)
                    idle += STREAM_POLL_SECONDS
                    continue
                idle = 0.0
                kind, payload = item
                if kind == RECONNECTING:
                    yield _sse("reconnecting", {"reason": payload})
                elif isinstance(payload, StateDocument):
                    yield _sse("state", payload.to_wire())
                else:
                    yield _sse("state", None)
        finally:
            feed.close()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.post("/toggle/{device_id}")
def toggle_device(device_id: str, runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        updates = runtime.state.toggle_device(device_id)
    return {device_id: updates[device_id]}


@router.post("/mode/{mode}")
def set_mode(mode: str, runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        runtime.state.set_mode(mode)
    return {"mode": mode}


@router.post("/kill")
def kill(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, bool]:
    with _store_errors():
        runtime.state.kill()
    return {"killed": True}


@router.post("/reset")
def reset(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        state = runtime.state.reset()
    return {"reset": True, "state": state.to_wire()}


@router.post("/all-on")
def all_on(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        runtime.state.all_on()
    return {"success": True, "all": "on"}


@router.post("/all-off")
def all_off(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        runtime.state.all_off()
    return {"success": True, "all": "off"}


@router.post("/timer/start", response_model=TimerStartResponse)
def start_timer(request: TimerStartRequest, runtime: HomeRuntime = Depends(get_runtime)) -> TimerStartResponse:
    with _store_errors():
        record = runtime.reconciler.schedule(request.devices, request.duration_seconds, request.action)
    return TimerStartResponse(
        success=True,
        timerId=record.id,
        devices=record.devices,
        duration=record.duration,
        action=record.action,
        endsAt=record.ends_at,
    )


@router.post("/timer/cancel")
def cancel_timer(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, bool]:
    with _store_errors():
        runtime.reconciler.cancel()
    return {"success": True, "cancelled": True}


@router.get("/timer/status")
def timer_status(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        return runtime.reconciler.timer_status()


@router.post("/esp/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    request: Request,
    payload: HeartbeatIn | None = Body(default=None),
    runtime: HomeRuntime = Depends(get_runtime),
) -> HeartbeatResponse:
    payload = payload or HeartbeatIn()
    address = payload.address or (request.client.host if request.client else None)
    server_time = runtime.presence.heartbeat(
        address=address,
        signal_strength=payload.signal_strength,
        uptime=payload.uptime,
        free_memory=payload.free_memory,
    )
    return HeartbeatResponse(ok=True, serverTime=server_time)


@router.get("/esp/status")
def esp_status(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.presence.status().to_dict()


@router.get("/status")
def status(runtime: HomeRuntime = Depends(get_runtime)) -> dict[str, Any]:
    with _store_errors():
        return runtime.state.status(runtime.presence)
