from collections import defaultdict
from typing import Any

import pytest

from hue_xpl.config import AppConfig
from hue_xpl.models import ChangeRecord, DeviceSnapshot, GroupSnapshot


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        port=8000,
        bridge_host="bridge.test",
        bridge_port=None,
        username="user",
        bridge_timeout_ms=1000,
        retry_delay_ms=0,
        poll_interval_ms=1,
        retry_ceiling=10,
        group_refresh_seconds=300,
        device_aliases=None,
        xpl_source="hue.test",
        xpl_broadcast="127.0.0.1",
        xpl_port=3865,
        xpl_bind_host="127.0.0.1",
        xpl_heartbeat_seconds=300,
        log_level="INFO",
    )


class FakeBridge:
    def __init__(self) -> None:
        self.lights: list[DeviceSnapshot] = []
        self.sensors: list[DeviceSnapshot] = []
        self.groups: list[GroupSnapshot] = []
        self.list_errors: dict[str, list[BaseException]] = defaultdict(list)
        self.apply_errors: dict[str, list[BaseException]] = defaultdict(list)
        self.applied: list[tuple[str, bool, Any]] = []
        self.calls: dict[str, int] = defaultdict(int)

    async def _list(self, name: str, items: list) -> list:
        self.calls[name] += 1
        if self.list_errors[name]:
            raise self.list_errors[name].pop(0)
        return list(items)

    async def list_lights(self) -> list[DeviceSnapshot]:
        return await self._list("lights", self.lights)

    async def list_sensors(self) -> list[DeviceSnapshot]:
        return await self._list("sensors", self.sensors)

    async def list_groups(self) -> list[GroupSnapshot]:
        return await self._list("groups", self.groups)

    async def apply_state(self, target_id: str, is_group: bool, command: Any) -> Any:
        key = f"group-{target_id}" if is_group else target_id
        self.calls[f"apply:{key}"] += 1
        if self.apply_errors[key]:
            raise self.apply_errors[key].pop(0)
        self.applied.append((target_id, is_group, command))
        return [{"success": {}}]


class FakeBus:
    def __init__(self) -> None:
        self.published: list[tuple[ChangeRecord, str]] = []
        self.handler = None
        self.started = False
        self.stopped = False

    def on_command(self, handler) -> None:
        self.handler = handler

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def publish(self, record: ChangeRecord, schema: str = "sensor.basic") -> None:
        self.published.append((record, schema))


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()
