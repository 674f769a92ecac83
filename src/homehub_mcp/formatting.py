"""Display helpers for catalog values."""

import math
from typing import Optional, Union


def format_duration(value: Optional[str]) -> str:
    """
    Render a server duration for display.

    Values already shaped like "1:02:03" pass through, plain seconds are
    converted, "unknown" and empty values become "Unknown".
    """
    if value is None:
        return "Unknown"
    text = str(value).strip()
    if ":" in text:
        return text
    if not text or text.lower() == "unknown":
        return "Unknown"
    try:
        number = float(text)
    except ValueError:
        return text
    if not math.isfinite(number) or number < 0:
        return text
    seconds = int(number)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


_UNITS = ("bytes", "KB", "MB", "GB", "TB")


def format_file_size(size: Optional[Union[int, float]]) -> str:
    """Decimal (1000-based) file size, e.g. 1500000 -> '1.5 MB'."""
    if size is None:
        return "Unknown"
    value = float(size)
    if value < 1000:
        n = int(value)
        return "1 byte" if n == 1 else f"{n} bytes"
    unit = 0
    while value >= 1000 and unit < len(_UNITS) - 1:
        value /= 1000
        unit += 1
    return f"{value:.1f} {_UNITS[unit]}"
