from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from hue_xpl.aliases import AliasResolver
from hue_xpl.cache import CacheEntry, EntryKind, StateCache
from hue_xpl.models import ChangeRecord, DeviceSnapshot, GroupSnapshot, GroupStatus, Scalar
from hue_xpl.units import bits_to_percent, hue_to_degrees, mired_to_kelvin, raw_temperature_to_celsius


logger = logging.getLogger("hue_xpl.differ")

TIMESTAMP_KEY = "lastupdated"


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_xy(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and len(value) == 2 and all(_is_number(v) for v in value)


def _enable(value: Any) -> Scalar:
    return "enable" if value else "disable"


def _xy(value: Any) -> Scalar:
    return f"{value[0]},{value[1]}"


@dataclass(frozen=True)
class _Tracked:
    raw_key: str
    type: str
    accepts: Callable[[Any], bool]
    convert: Callable[[Any], Scalar] | None = None
    unit: str | None = None


LIGHT_ATTRIBUTES: tuple[_Tracked, ...] = (
    _Tracked("on", "status", _is_bool, _enable),
    _Tracked("reachable", "reachable", _is_bool, _enable),
    _Tracked("bri", "brightness", _is_number, bits_to_percent, "%"),
    _Tracked("hue", "hue", _is_number, hue_to_degrees, "deg"),
    _Tracked("sat", "saturation", _is_number, bits_to_percent, "%"),
    _Tracked("ct", "color-temperature", _is_number, mired_to_kelvin, "K"),
    _Tracked("xy", "xy", _is_xy, _xy),
    _Tracked("alert", "alert", _is_str),
    _Tracked("effect", "effect", _is_str),
    _Tracked("colormode", "color-mode", _is_str),
)


def _sensor_value(name: str, raw: Any) -> tuple[Scalar, str | None]:
    if name == "temperature" and _is_number(raw):
        return raw_temperature_to_celsius(raw), "C"
    if name == "battery" and _is_number(raw):
        return raw, "%"
    if isinstance(raw, bool):
        if name in {"on", "reachable"}:
            return _enable(raw), None
        return ("true" if raw else "false"), None
    return raw, None


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def derive_group_status(group: GroupSnapshot, lights: Mapping[str, DeviceSnapshot]) -> GroupStatus:
    """
    A group is on when at least one member light is both on and reachable.
    Members missing from `lights` do not count; a light that does not report
    `reachable` at all is treated as reachable.
    """
    on = False
    for member_id in group.member_device_ids:
        light = lights.get(member_id)
        if light is None:
            continue
        attrs = light.attributes
        if attrs.get("on") is True and attrs.get("reachable", True) is True:
            on = True
            break
    return GroupStatus(group=group, on=on)


class Differ:
    def __init__(self, *, cache: StateCache, resolver: AliasResolver) -> None:
        self.cache = cache
        self.resolver = resolver

    def diff(self, snapshot: DeviceSnapshot | GroupStatus) -> list[ChangeRecord]:
        if isinstance(snapshot, GroupStatus):
            return self._diff_group(snapshot)

        entry = self._entry_for(snapshot.external_key, snapshot.kind, snapshot.id)
        if entry is None:
            return []
        if snapshot.kind == "light":
            return self._diff_light(entry, snapshot)
        return self._diff_sensor(entry, snapshot)

    def diff_all(self, snapshots: Iterable[DeviceSnapshot | GroupStatus]) -> list[ChangeRecord]:
        records: list[ChangeRecord] = []
        for snapshot in snapshots:
            records.extend(self.diff(snapshot))
        return records

    def _entry_for(self, external_key: str, kind: EntryKind, bridge_id: str) -> CacheEntry | None:
        resolution = self.resolver.resolve(external_key)
        if resolution.ignored or resolution.key is None:
            return None
        existing = self.cache.get(resolution.key)
        if existing is not None and existing.kind != kind:
            logger.warning(
                "Routing key %s already used by a %s, ignoring %s %s",
                resolution.key,
                existing.kind,
                kind,
                bridge_id,
            )
            return None
        return self.cache.ensure(routing_key=resolution.key, kind=kind, bridge_id=bridge_id)

    @staticmethod
    def _accept(entry: CacheEntry, name: str, raw: Any) -> bool:
        last = entry.last_attributes
        if name in last and last[name] == raw and type(last[name]) is type(raw):
            return False
        last[name] = raw
        return True

    def _diff_light(self, entry: CacheEntry, snapshot: DeviceSnapshot) -> list[ChangeRecord]:
        records: list[ChangeRecord] = []
        for tracked in LIGHT_ATTRIBUTES:
            raw = snapshot.attributes.get(tracked.raw_key)
            if raw is None or not tracked.accepts(raw):
                continue
            if isinstance(raw, list):
                raw = tuple(raw)
            value = tracked.convert(raw) if tracked.convert else raw
            # Unconvertible readings (ct=0) leave the cached baseline alone.
            if value is None:
                continue
            if not self._accept(entry, tracked.type, raw):
                continue
            records.append(
                ChangeRecord(
                    routing_key=entry.routing_key,
                    attribute_name=tracked.type,
                    new_value=value,
                    unit=tracked.unit,
                )
            )
        return records

    def _diff_sensor(self, entry: CacheEntry, snapshot: DeviceSnapshot) -> list[ChangeRecord]:
        attrs = snapshot.attributes
        timestamp = attrs.get(TIMESTAMP_KEY)
        if timestamp is not None:
            if entry.last_attributes.get(TIMESTAMP_KEY) == timestamp:
                return []
            entry.last_attributes[TIMESTAMP_KEY] = timestamp
        stamp = timestamp if isinstance(timestamp, str) and timestamp != "none" else None

        records: list[ChangeRecord] = []
        for name, raw in attrs.items():
            if name == TIMESTAMP_KEY or not _is_scalar(raw):
                continue
            if not self._accept(entry, name, raw):
                continue
            value, unit = _sensor_value(name, raw)
            records.append(
                ChangeRecord(
                    routing_key=entry.routing_key,
                    attribute_name=name,
                    new_value=value,
                    unit=unit,
                    timestamp=stamp,
                )
            )
        return records

    def _diff_group(self, status: GroupStatus) -> list[ChangeRecord]:
        entry = self._entry_for(status.group.external_key, "group", status.group.id)
        if entry is None:
            return []
        if not self._accept(entry, "status", status.on):
            return []
        return [ChangeRecord(routing_key=entry.routing_key, attribute_name="status", new_value=_enable(status.on))]
