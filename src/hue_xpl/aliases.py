from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Literal


IGNORE = "ignore"

ResolutionKind = Literal["mapped", "ignored", "unmapped"]


class AliasConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    key: str | None

    @property
    def ignored(self) -> bool:
        return self.kind == "ignored"


def parse_aliases(value: str | None) -> dict[str, str]:
    """
    Accepts `key=value,key=value` or a path to a JSON object file.
    """
    if not value or not value.strip():
        return {}
    value = value.strip()

    if os.path.isfile(value):
        try:
            with open(value, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise AliasConfigError(f"Can not read alias file {value}: {exc}") from exc
        if not isinstance(data, dict):
            raise AliasConfigError(f"Alias file {value} must contain a JSON object")
        return {str(k).strip(): str(v).strip() for k, v in data.items() if str(k).strip() and str(v).strip()}

    aliases: dict[str, str] = {}
    for item in value.split(","):
        if not item.strip():
            continue
        if "=" not in item:
            raise AliasConfigError(f"Invalid alias entry: {item.strip()!r} (expected key=value)")
        key, target = item.split("=", 1)
        key = key.strip()
        target = target.strip()
        if key and target:
            aliases[key] = target
    return aliases


class AliasResolver:
    def __init__(self, mapping: dict[str, str] | None = None) -> None:
        self._mapping = dict(mapping or {})

    def resolve(self, external_key: str) -> Resolution:
        target = self._mapping.get(external_key)
        if target is None:
            return Resolution(kind="unmapped", key=external_key)
        if target.lower() == IGNORE:
            return Resolution(kind="ignored", key=None)
        return Resolution(kind="mapped", key=target)

    def __len__(self) -> int:
        return len(self._mapping)
