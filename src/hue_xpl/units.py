from __future__ import annotations


MIN_MIRED = 153
MAX_MIRED = 500


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# Convert 0-254 to 0-100
def bits_to_percent(value: float) -> int:
    return int(round(value / 254 * 100))


# Convert 0-100 to 0-254
def percent_to_bits(value: float) -> int:
    return int(round(_clamp(value, 0, 100) / 100 * 254))


# Convert 0-255 to 0-100
def data1_to_percent(value: float) -> int:
    return int(round(value / 255 * 100))


# Convert 0-65535 to 0-360
def hue_to_degrees(value: float) -> int:
    return int(round(value / 65535 * 360))


# Convert 0-360 to 0-65535
def degrees_to_hue(value: float) -> int:
    return int(round(_clamp(value, 0, 360) / 360 * 65535))


def mired_to_kelvin(value: float) -> int | None:
    if value <= 0:
        return None
    return int(round(1_000_000 / value))


def kelvin_to_mired(value: float) -> int:
    if value <= 0:
        return MAX_MIRED
    return int(_clamp(round(1_000_000 / value), MIN_MIRED, MAX_MIRED))


def raw_temperature_to_celsius(value: float) -> float:
    return value / 100


def rgb_to_xy(red: int, green: int, blue: int) -> tuple[float, float, int]:
    """
    sRGB 0-255 -> (x, y, bri) using the wide gamut D65 matrix.
    """
    channels = []
    for c in (red, green, blue):
        v = _clamp(c, 0, 255) / 255.0
        v = ((v + 0.055) / 1.055) ** 2.4 if v > 0.04045 else v / 12.92
        channels.append(v)
    r, g, b = channels

    x = r * 0.664511 + g * 0.154324 + b * 0.162028
    y = r * 0.283881 + g * 0.668433 + b * 0.047685
    z = r * 0.000088 + g * 0.072310 + b * 0.986039
    total = x + y + z
    if total == 0:
        return 0.0, 0.0, 0
    bri = int(round(_clamp(max(red, green, blue), 0, 255) / 255 * 254))
    return round(x / total, 4), round(y / total, 4), bri
