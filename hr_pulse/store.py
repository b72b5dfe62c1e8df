"""Record store contract, path layout and an in-process store implementation."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from .errors import StoreError
from .models import RecordKind

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class RecordStore(Protocol):
    """Operations the dashboard needs from the remote real-time store."""

    async def subscribe(
        self, path: str, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None
    ) -> Subscription: ...

    async def read(self, path: str) -> Any: ...

    async def patch(self, path: str, fields: Dict[str, Any]) -> None: ...

    async def write(self, path: str, value: Any) -> None: ...

    async def delete(self, path: str) -> None: ...


@dataclass(slots=True, frozen=True)
class StorePaths:
    """Path layout of the admin's subtree: ``users/{admin}/employees/{employee}/{kind}/{record}``."""

    admin_id: str

    def roster(self) -> str:
        return f"users/{self.admin_id}/employees"

    def entity(self, entity_id: str) -> str:
        return f"{self.roster()}/{entity_id}"

    def records(self, entity_id: str, kind: RecordKind) -> str:
        return f"{self.entity(entity_id)}/{kind.value}"

    def record(self, entity_id: str, kind: RecordKind, record_id: str) -> str:
        return f"{self.records(entity_id, kind)}/{record_id}"


def split_path(path: str) -> List[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def _prune(value: Any) -> Any:
    """Drop empty containers the way the store does when children are removed."""

    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = _prune(child)
            if child is not None:
                cleaned[key] = child
        return cleaned or None
    return value


def get_at(tree: Any, segments: List[str]) -> Any:
    node = tree
    for segment in segments:
        if isinstance(node, dict):
            node = node.get(segment)
        elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
            node = node[int(segment)]
        else:
            return None
        if node is None:
            return None
    return node


def set_at(tree: Any, segments: List[str], value: Any) -> Any:
    """Return ``tree`` with ``value`` placed at ``segments`` (None removes the node)."""

    if not segments:
        return _prune(copy.deepcopy(value))
    if isinstance(tree, list):
        tree = {str(index): item for index, item in enumerate(tree) if item is not None}
    root = tree if isinstance(tree, dict) else {}
    head, rest = segments[0], segments[1:]
    child = set_at(root.get(head), rest, value)
    if child is None:
        root.pop(head, None)
    else:
        root[head] = child
    return root or None


def merge_at(tree: Any, segments: List[str], fields: Dict[str, Any]) -> Any:
    """Return ``tree`` with each key of ``fields`` set under ``segments``; keys may be sub-paths."""

    for name, value in fields.items():
        tree = set_at(tree, segments + split_path(name), value)
    return tree


class _MemorySubscription:
    def __init__(self, store: "InMemoryRecordStore", path: str, on_snapshot: SnapshotCallback) -> None:
        self._store = store
        self.path = path
        self.segments = split_path(path)
        self.on_snapshot = on_snapshot
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._store._subscriptions.remove(self)


class InMemoryRecordStore:
    """Process-local store with the same snapshot semantics as the remote one.

    Snapshots are delivered synchronously, first on subscribe and then after
    every mutation that touches the subscribed path.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._tree: Any = _prune(copy.deepcopy(initial)) if initial else None
        self._subscriptions: List[_MemorySubscription] = []

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def active_paths(self) -> List[str]:
        return [sub.path for sub in self._subscriptions]

    def value_at(self, path: str) -> Any:
        return copy.deepcopy(get_at(self._tree, split_path(path)))

    async def subscribe(
        self, path: str, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None
    ) -> _MemorySubscription:
        subscription = _MemorySubscription(self, path, on_snapshot)
        self._subscriptions.append(subscription)
        on_snapshot(self.value_at(path))
        return subscription

    async def read(self, path: str) -> Any:
        return self.value_at(path)

    async def patch(self, path: str, fields: Dict[str, Any]) -> None:
        if not isinstance(fields, dict):
            raise StoreError("patch", path, "fields must be a mapping")
        self._tree = merge_at(self._tree, split_path(path), fields)
        self._notify(path)

    async def write(self, path: str, value: Any) -> None:
        self._tree = set_at(self._tree, split_path(path), value)
        self._notify(path)

    async def delete(self, path: str) -> None:
        self._tree = set_at(self._tree, split_path(path), None)
        self._notify(path)

    def _notify(self, path: str) -> None:
        changed = split_path(path)
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            watched = subscription.segments
            depth = min(len(changed), len(watched))
            if changed[:depth] != watched[:depth]:
                continue
            try:
                subscription.on_snapshot(self.value_at(subscription.path))
            except Exception:  # noqa: BLE001
                logger.exception("Snapshot callback for %s failed", subscription.path)


__all__ = [
    "RecordStore",
    "Subscription",
    "StorePaths",
    "InMemoryRecordStore",
    "split_path",
    "get_at",
    "set_at",
    "merge_at",
]
