from __future__ import annotations

from dataclasses import dataclass, field


XPL_CMND = "xpl-cmnd"
XPL_STAT = "xpl-stat"
XPL_TRIG = "xpl-trig"
MESSAGE_TYPES = frozenset({XPL_CMND, XPL_STAT, XPL_TRIG})


class XplDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class XplMessage:
    msg_type: str
    source: str
    target: str
    schema: str
    body: dict[str, str] = field(default_factory=dict)
    hop: int = 1

    def is_for(self, source: str) -> bool:
        return self.target == "*" or self.target.lower() == source.lower()

    def encode(self) -> bytes:
        lines = [
            self.msg_type,
            "{",
            f"hop={self.hop}",
            f"source={self.source}",
            f"target={self.target}",
            "}",
            self.schema,
            "{",
        ]
        for key, value in self.body.items():
            lines.append(f"{key}={_value(value)}")
        lines.append("}")
        return ("\n".join(lines) + "\n").encode("utf-8")


def _value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).replace("\n", " ")


def _parse_block(lines: list[str], start: int) -> tuple[dict[str, str], int]:
    if start >= len(lines) or lines[start] != "{":
        raise XplDecodeError("expected '{'")
    values: dict[str, str] = {}
    index = start + 1
    while index < len(lines):
        line = lines[index]
        if line == "}":
            return values, index + 1
        if "=" not in line:
            raise XplDecodeError(f"invalid name/value line: {line!r}")
        key, value = line.split("=", 1)
        values[key.strip().lower()] = value
        index += 1
    raise XplDecodeError("unterminated block")


def decode(data: bytes) -> XplMessage:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise XplDecodeError("message is not utf-8") from exc

    lines = [line.strip() for line in text.replace("\r\n", "\n").split("\n")]
    lines = [line for line in lines if line]
    if len(lines) < 4:
        raise XplDecodeError("message too short")

    msg_type = lines[0].lower()
    if msg_type not in MESSAGE_TYPES:
        raise XplDecodeError(f"unknown message type {lines[0]!r}")

    header, index = _parse_block(lines, 1)
    if index >= len(lines):
        raise XplDecodeError("missing schema")
    schema = lines[index].lower()
    body, _ = _parse_block(lines, index + 1)

    try:
        hop = int(header.get("hop", "1"))
    except ValueError as exc:
        raise XplDecodeError("invalid hop count") from exc
    source = header.get("source")
    if not source:
        raise XplDecodeError("missing source")

    return XplMessage(
        msg_type=msg_type,
        source=source,
        target=header.get("target", "*"),
        schema=schema,
        body=body,
        hop=hop,
    )
