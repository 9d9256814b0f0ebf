from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


EntryKind = Literal["light", "sensor", "group"]


@dataclass
class CacheEntry:
    routing_key: str
    kind: EntryKind
    bridge_ids: set[str] = field(default_factory=set)
    last_attributes: dict[str, Any] = field(default_factory=dict)


class StateCache:
    """Last published raw attribute values per routing key."""

    def __init__(self) -> None:
        self._by_key: dict[str, CacheEntry] = {}

    def ensure(self, *, routing_key: str, kind: EntryKind, bridge_id: str) -> CacheEntry:
        entry = self._by_key.get(routing_key)
        if entry is None:
            entry = CacheEntry(routing_key=routing_key, kind=kind)
            self._by_key[routing_key] = entry
        entry.bridge_ids.add(bridge_id)
        return entry

    def get(self, routing_key: str) -> CacheEntry | None:
        return self._by_key.get(routing_key)

    def is_device(self, routing_key: str) -> bool:
        entry = self._by_key.get(routing_key)
        return entry is not None and entry.kind == "light"

    def is_group(self, routing_key: str) -> bool:
        entry = self._by_key.get(routing_key)
        return entry is not None and entry.kind == "group"

    def device_keys(self) -> list[str]:
        return [key for key, entry in self._by_key.items() if entry.kind == "light"]

    def group_keys(self) -> list[str]:
        return [key for key, entry in self._by_key.items() if entry.kind == "group"]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            key: {
                "kind": entry.kind,
                "bridgeIds": sorted(entry.bridge_ids),
                "attributes": dict(entry.last_attributes),
            }
            for key, entry in self._by_key.items()
        }

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, routing_key: object) -> bool:
        return routing_key in self._by_key
