from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from hue_xpl.aliases import AliasResolver
from hue_xpl.cache import StateCache
from hue_xpl.models import (
    BrightnessCommand,
    HsbCommand,
    MutationRequest,
    NormalizedCommand,
    OffCommand,
    OnCommand,
    Rejected,
    RgbCommand,
    WhiteCommand,
    XplCommandBody,
)
from hue_xpl.units import data1_to_percent


logger = logging.getLogger("hue_xpl.translator")

SUPPORTED_SCHEMAS = frozenset({"x10.basic", "delabarre.command"})

ALL_TARGETS = "all"

_STATUS_ON = re.compile(r"enable|enabled|on|1|true", re.IGNORECASE)
_STATUS_OFF = re.compile(r"disable|disabled|off|0|false", re.IGNORECASE)

_ALL_OFF = {"all_units_off", "all_lights_off"}
_ALL_ON = {"all_units_on", "all_lights_on"}
_PASSTHROUGH = {"on", "off", "brightness", "white", "hsb", "rgb"}

UNSUPPORTED_COMMAND = "unsupported command"
NO_TARGETS = "no targets"
MALFORMED_COLOR = "malformed color payload"


def is_supported_message(schema: str | None) -> bool:
    return schema in SUPPORTED_SCHEMAS


def parse_number(value: Any) -> int | None:
    """Lenient integer parsing; anything unusable is None (unset)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    try:
        return int(round(number))
    except (ValueError, OverflowError):
        return None


def _percent(value: Any) -> int | None:
    number = parse_number(value)
    if number is None:
        return None
    return max(0, min(100, number))


class CommandTranslator:
    def __init__(self, *, cache: StateCache, resolver: AliasResolver) -> None:
        self.cache = cache
        self.resolver = resolver

    def translate(self, body: XplCommandBody | Mapping[str, Any]) -> MutationRequest | Rejected:
        if not isinstance(body, XplCommandBody):
            body = XplCommandBody.model_validate(dict(body))

        command = (body.command or "").strip().lower()
        device = body.device
        brightness: int | None = None

        if command == "status":
            current = "" if body.current is None else str(body.current)
            if _STATUS_ON.search(current):
                op = "on"
            elif _STATUS_OFF.search(current):
                op = "off"
            else:
                return Rejected(UNSUPPORTED_COMMAND)
        elif command in _ALL_OFF:
            op = "off"
            device = ALL_TARGETS
        elif command in _ALL_ON:
            op = "on"
            device = ALL_TARGETS
        elif command == "bright":
            data1 = parse_number(body.data1)
            if data1 is None:
                return Rejected(UNSUPPORTED_COMMAND)
            op = "brightness"
            brightness = max(0, min(100, data1_to_percent(data1)))
        elif command in _PASSTHROUGH:
            op = command
        else:
            return Rejected(UNSUPPORTED_COMMAND)

        targets = self.resolve_targets(device)
        if not targets:
            return Rejected(NO_TARGETS)

        normalized = self._build_command(op, body, brightness)
        if isinstance(normalized, Rejected):
            return normalized

        return MutationRequest(
            target_keys=frozenset(targets),
            target_is_group=targets,
            command=normalized,
        )

    def resolve_targets(self, device: str | None) -> dict[str, bool]:
        """
        Maps a comma separated token list to {routing_key: is_group}.
        Device keys win over group keys when a token matches both.
        """
        targets: dict[str, bool] = {}
        if not device:
            return targets

        for token in device.split(","):
            token = token.strip()
            if not token:
                continue
            if token.lower() == ALL_TARGETS:
                for key in self.cache.device_keys():
                    targets[key] = False
                continue

            resolution = self.resolver.resolve(token)
            if resolution.ignored or resolution.key is None:
                logger.debug("Token %s is ignored", token)
                continue
            key = resolution.key
            if self.cache.is_device(key):
                targets[key] = False
            elif self.cache.is_group(key):
                targets[key] = True
            else:
                logger.debug("Token %s (key %s) matches no known device or group", token, key)
        return targets

    @staticmethod
    def _build_command(op: str, body: XplCommandBody, brightness: int | None) -> NormalizedCommand | Rejected:
        if op == "on":
            return OnCommand()
        if op == "off":
            return OffCommand()
        if op == "brightness":
            if brightness is None:
                brightness = _percent(body.current if body.current is not None else body.brightness)
            return BrightnessCommand(brightness=brightness)
        if op == "white":
            return WhiteCommand(
                color_temp_k=parse_number(body.colorTemp),
                brightness=_percent(body.current if body.current is not None else body.brightness),
            )
        if op == "hsb":
            return HsbCommand(
                hue=parse_number(body.hue),
                saturation=_percent(body.saturation),
                brightness=_percent(body.brightness),
            )
        # rgb
        red = parse_number(body.red)
        green = parse_number(body.green)
        blue = parse_number(body.blue)
        if red is None or green is None or blue is None:
            return Rejected(MALFORMED_COLOR)
        return RgbCommand(red=red, green=green, blue=blue)
