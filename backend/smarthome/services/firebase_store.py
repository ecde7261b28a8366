import json
import logging
import threading
from collections.abc import Iterable, Iterator
from typing import Any

import requests

from smarthome.core.errors import StoreTimeout, StoreUnavailable
from smarthome.services.store import (
    ChangeCallback,
    DocumentStore,
    ErrorCallback,
    Subscription,
    merge_fields,
    set_in,
    split_path,
)

logger = logging.getLogger(__name__)

# the server sends keep-alive events every 30 seconds
STREAM_READ_TIMEOUT = 60


def iter_events(lines: Iterable[str]) -> Iterator[tuple[str, Any]]:
    """Parse a server-sent event stream into ``(event, data)`` pairs."""
    event = None
    data_lines: list[str] = []
    for line in lines:
        if line == "":
            if event is not None:
                raw = "\n".join(data_lines)
                yield event, json.loads(raw) if raw else None
            event = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)

    if event is not None:
        raw = "\n".join(data_lines)
        yield event, json.loads(raw) if raw else None


def apply_event(cache: Any, event: str, data: Any) -> Any:
    """Fold a ``put`` or ``patch`` event into the cached subtree."""
    parts = [part for part in data["path"].strip("/").split("/") if part]
    if event == "put":
        return set_in(cache, parts, data["data"])
    if event == "patch":
        current = cache
        for part in parts:
            current = current.get(part) if isinstance(current, dict) else None
        return set_in(cache, parts, merge_fields(current, data["data"]))
    return cache


class FirebaseRestStore(DocumentStore):
    """Realtime Database adapter over its REST API."""

    def __init__(self, base_url: str, auth_token: str | None = None, timeout: int = 10) -> None:
        if not base_url:
            raise ValueError("FIREBASE_DATABASE_URL is required for the firebase store backend")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{'/'.join(split_path(path))}.json"

    def _params(self) -> dict[str, str]:
        return {"auth": self.auth_token} if self.auth_token else {}

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        try:
            response = self.session.request(
                method,
                self._url(path),
                params=self._params(),
                data=None if payload is None else json.dumps(payload),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout as exc:
            raise StoreTimeout(f"Firebase request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise StoreUnavailable(f"Firebase request failed: {exc}") from exc
        return response.json() if response.content else None

    def read(self, path: str) -> Any:
        return self._request("GET", path)

    def write(self, path: str, value: Any) -> None:
        if value is None:
            self._request("DELETE", path)
        else:
            self._request("PUT", path, value)

    def merge(self, path: str, fields: dict[str, Any]) -> None:
        self._request("PATCH", path, fields)

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        subscription = Subscription(path, on_change, on_error)
        thread = threading.Thread(
            target=self._stream,
            args=(subscription,),
            name=f"firebase-stream-{subscription.parts[0]}",
            daemon=True,
        )
        thread.start()
        return subscription

    def _stream(self, subscription: Subscription) -> None:
        cache: Any = None
        try:
            with self.session.get(
                self._url(subscription.path),
                params=self._params(),
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, STREAM_READ_TIMEOUT),
            ) as response:
                response.raise_for_status()
                lines = response.iter_lines(decode_unicode=True)
                for event, data in iter_events(line or "" for line in lines):
                    if subscription.closed.is_set():
                        return
                    if event in {"put", "patch"}:
                        cache = apply_event(cache, event, data)
                        subscription.deliver(cache)
                    elif event in {"cancel", "auth_revoked"}:
                        subscription.fail(StoreUnavailable(f"Firebase stream ended: {event}"))
                        return
        except requests.Timeout as exc:
            subscription.fail(StoreTimeout(f"Firebase stream timed out: {exc}"))
            return
        except requests.RequestException as exc:
            subscription.fail(StoreUnavailable(f"Firebase stream failed: {exc}"))
            return
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Malformed event on %s stream: %s", subscription.path, exc)
            subscription.fail(StoreUnavailable(f"Firebase stream sent a malformed event: {exc}"))
            return

        if subscription.active:
            logger.info("Firebase stream for %s closed by server", subscription.path)
            subscription.fail(StoreUnavailable("Firebase stream closed"))

    def close(self) -> None:
        self.session.close()
