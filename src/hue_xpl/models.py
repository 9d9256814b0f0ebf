from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


DeviceKind = Literal["light", "sensor"]

Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class DeviceSnapshot:
    id: str
    unique_id: str | None
    kind: DeviceKind
    attributes: dict[str, Any]
    name: str | None = None

    @property
    def external_key(self) -> str:
        return self.unique_id or f"{self.kind}-{self.id}"


@dataclass(frozen=True)
class GroupSnapshot:
    id: str
    member_device_ids: tuple[str, ...]
    name: str | None = None

    @property
    def external_key(self) -> str:
        return f"group-{self.id}"


@dataclass(frozen=True)
class GroupStatus:
    group: GroupSnapshot
    on: bool


@dataclass(frozen=True)
class ChangeRecord:
    routing_key: str
    attribute_name: str
    new_value: Scalar
    unit: str | None = None
    timestamp: str | None = None

    def as_event(self) -> dict[str, Any]:
        event: dict[str, Any] = {
            "device": self.routing_key,
            "type": self.attribute_name,
            "current": self.new_value,
        }
        if self.unit:
            event["units"] = self.unit
        if self.timestamp:
            event["lastupdated"] = self.timestamp
        return event


class _BaseCommand(BaseModel):
    model_config = ConfigDict(frozen=True)


class OnCommand(_BaseCommand):
    op: Literal["on"] = "on"


class OffCommand(_BaseCommand):
    op: Literal["off"] = "off"


class BrightnessCommand(_BaseCommand):
    op: Literal["brightness"] = "brightness"
    brightness: int | None = Field(default=None, description="Brightness percent 0-100; None lets the bridge decide.")


class WhiteCommand(_BaseCommand):
    op: Literal["white"] = "white"
    color_temp_k: int | None = Field(default=None, description="Color temperature in Kelvin.")
    brightness: int | None = Field(default=None, description="Brightness percent 0-100.")


class HsbCommand(_BaseCommand):
    op: Literal["hsb"] = "hsb"
    hue: int | None = Field(default=None, description="Hue in degrees 0-360.")
    saturation: int | None = Field(default=None, description="Saturation percent 0-100.")
    brightness: int | None = Field(default=None, description="Brightness percent 0-100.")


class RgbCommand(_BaseCommand):
    op: Literal["rgb"] = "rgb"
    red: int
    green: int
    blue: int


NormalizedCommand = Annotated[
    Union[
        OnCommand,
        OffCommand,
        BrightnessCommand,
        WhiteCommand,
        HsbCommand,
        RgbCommand,
    ],
    Field(discriminator="op"),
]


@dataclass(frozen=True)
class MutationRequest:
    target_keys: frozenset[str]
    target_is_group: dict[str, bool]
    command: NormalizedCommand

    @property
    def op(self) -> str:
        return self.command.op

    def device_keys(self) -> list[str]:
        return sorted(k for k in self.target_keys if not self.target_is_group.get(k, False))

    def group_keys(self) -> list[str]:
        return sorted(k for k in self.target_keys if self.target_is_group.get(k, False))


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Target:
    routing_key: str
    bridge_id: str
    is_group: bool

    @property
    def label(self) -> str:
        kind = "group" if self.is_group else "light"
        return f"{self.routing_key} ({kind} {self.bridge_id})"


@dataclass
class CommandOutcome:
    op: str | None = None
    applied: list[Target] = field(default_factory=list)
    failed: list[tuple[Target, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class XplCommandBody(BaseModel):
    """Body of an inbound `x10.basic` / `delabarre.command` message."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    command: str | None = None
    device: str | None = None
    current: str | int | float | None = None
    hue: str | int | float | None = None
    saturation: str | int | float | None = None
    brightness: str | int | float | None = None
    red: str | int | float | None = None
    green: str | int | float | None = None
    blue: str | int | float | None = None
    colorTemp: str | int | float | None = Field(default=None, alias="colortemp")
    data1: str | int | float | None = None
