"""HTTP client for the Firebase Realtime Database REST API."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import StoreError, TransientStoreError
from .store import ErrorCallback, SnapshotCallback, merge_at, set_at, split_path

logger = logging.getLogger(__name__)


class FirebaseApiError(StoreError):
    """Raised when Firebase rejects a request (rules, bad path, bad payload)."""


def _raise_for_response(operation: str, path: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        detail = response.json().get("error", response.reason_phrase)
    except (ValueError, AttributeError):
        detail = response.reason_phrase
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientStoreError(operation, path, f"{response.status_code} {detail}")
    raise FirebaseApiError(operation, path, f"{response.status_code} {detail}")


class ServerSentEvent:
    __slots__ = ("event", "data")

    def __init__(self, event: str, data: str) -> None:
        self.event = event
        self.data = data


class EventStreamParser:
    """Incremental ``text/event-stream`` parser fed one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r")
        if not line:
            if not self._event and not self._data:
                return None
            event = ServerSentEvent(self._event or "message", "\n".join(self._data))
            self._event, self._data = "", []
            return event
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class FirebaseSubscription:
    """One streaming listener; keeps a local copy of the subtree and delivers it whole."""

    def __init__(
        self,
        path: str,
        response: httpx.Response,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self.path = path
        self._response = response
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._tree: Any = None
        self._closed = False
        self._task = asyncio.create_task(self._read(), name=f"firebase-stream:{path}")

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not asyncio.current_task():
            self._task.cancel()

    def apply(self, event: ServerSentEvent) -> bool:
        """Fold a ``put``/``patch`` event into the local tree; True when it changed."""

        if event.event not in {"put", "patch"}:
            return False
        payload = json.loads(event.data)
        segments = split_path(payload.get("path", "/"))
        if event.event == "put":
            self._tree = set_at(self._tree, segments, payload.get("data"))
        else:
            self._tree = merge_at(self._tree, segments, payload.get("data") or {})
        return True

    async def _read(self) -> None:
        parser = EventStreamParser()
        failure: Optional[BaseException] = None
        try:
            async for line in self._response.aiter_lines():
                event = parser.feed(line)
                if event is None or self._closed:
                    continue
                if event.event in {"cancel", "auth_revoked"}:
                    failure = FirebaseApiError("subscribe", self.path, event.event)
                    break
                if not self.apply(event):
                    continue
                try:
                    self._on_snapshot(copy.deepcopy(self._tree))
                except Exception:  # noqa: BLE001
                    logger.exception("Snapshot callback for %s failed", self.path)
            else:
                failure = TransientStoreError("subscribe", self.path, "stream closed by server")
        except httpx.HTTPError as exc:
            failure = TransientStoreError("subscribe", self.path, str(exc))
        except (ValueError, KeyError) as exc:
            failure = TransientStoreError("subscribe", self.path, f"malformed event: {exc}")
        finally:
            await self._response.aclose()
        if failure is not None and not self._closed:
            self._closed = True
            if self._on_error is not None:
                self._on_error(failure)
            else:
                logger.warning("%s", failure)


class FirebaseRecordStore:
    """Async wrapper around the REST endpoints used by HR Pulse."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth_token = auth_token
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    @staticmethod
    def _url(path: str) -> str:
        return "/" + "/".join(split_path(path)) + ".json"

    async def _request(self, method: str, path: str, body: Any = None) -> httpx.Response:
        try:
            if body is None:
                response = await self._client.request(method, self._url(path), params=self._params())
            else:
                response = await self._client.request(method, self._url(path), params=self._params(), json=body)
        except httpx.HTTPError as exc:
            raise TransientStoreError(method.lower(), path, str(exc)) from exc
        _raise_for_response(method.lower(), path, response)
        return response

    async def read(self, path: str) -> Any:
        response = await self._request("GET", path)
        return response.json()

    async def patch(self, path: str, fields: Dict[str, Any]) -> None:
        await self._request("PATCH", path, fields)

    async def write(self, path: str, value: Any) -> None:
        await self._request("PUT", path, value)

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def subscribe(
        self, path: str, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None
    ) -> FirebaseSubscription:
        """Open a streaming listener; returns once the server accepted the stream."""

        request = self._client.build_request(
            "GET",
            self._url(path),
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        try:
            response = await self._client.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise TransientStoreError("subscribe", path, str(exc)) from exc
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            _raise_for_response("subscribe", path, response)
        return FirebaseSubscription(path, response, on_snapshot, on_error)


__all__ = [
    "FirebaseRecordStore",
    "FirebaseSubscription",
    "FirebaseApiError",
    "EventStreamParser",
    "ServerSentEvent",
]
