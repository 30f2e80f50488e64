from __future__ import annotations

import re

PASTEL_COLORS = [
    "#cbd5e1", "#fca5a5", "#fdba74", "#fcd34d", "#86efac",
    "#6ee7b7", "#5eead4", "#67e8f9", "#7dd3fc", "#93c5fd",
    "#a5b4fc", "#c4b5fd", "#d8b4fe", "#f0abfc", "#fda4af",
    "#f87171", "#fb923c", "#fbbf24", "#a3e635", "#34d399",
    "#22d3ee", "#818cf8", "#a78bfa", "#e879f9", "#fb7185",
]

DEFAULT_SUBJECT = "default"
SUBJECT_CODE_PATTERN = re.compile(r"\b([A-Z]{3,4}[0-9][A-Z0-9]{3,6})\b", re.ASCII)
DIGIT_PATTERN = re.compile(r"[0-9]")


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _utf16_units(text: str) -> list[int]:
    raw = text.encode("utf-16-le", errors="surrogatepass")
    return [int.from_bytes(raw[i : i + 2], "little") for i in range(0, len(raw), 2)]


def _string_hash(text: str) -> int:
    # Same arithmetic as the web client's `c + ((h << 5) - h)` so colors match.
    hashed = 0
    for unit in _utf16_units(text):
        hashed = unit + (_to_int32(_to_int32(hashed) << 5) - hashed)
    return hashed


def subject_code(summary: str) -> str:
    """Grouping key for a summary.

    Tried in order: a course code such as ``COMP3122``, the part before a
    dash, a first word containing a digit, then the whole trimmed summary.
    """
    if not summary:
        return DEFAULT_SUBJECT
    clean = summary.strip()

    match = SUBJECT_CODE_PATTERN.search(clean)
    if match:
        return match.group(1)

    if "-" in clean:
        part = clean.split("-")[0].strip()
        if 2 < len(part) < 15:
            return part

    first_word = clean.split(" ")[0]
    if len(first_word) > 3 and DIGIT_PATTERN.search(first_word):
        return first_word

    return clean


def subject_color(summary: str) -> str:
    key = subject_code(summary)
    return PASTEL_COLORS[abs(_string_hash(key)) % len(PASTEL_COLORS)]


def string_to_color(text: str) -> str:
    value = _to_int32(_string_hash(text)) & 0x00FFFFFF
    return f"#{value:06X}"


def contrast_color(hex_color: str) -> str:
    value = hex_color[1:] if hex_color.startswith("#") else hex_color
    red = int(value[0:2], 16)
    green = int(value[2:4], 16)
    blue = int(value[4:6], 16)
    yiq = (red * 299 + green * 587 + blue * 114) / 1000
    return "black" if yiq >= 128 else "white"
