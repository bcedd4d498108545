"""Small display helpers shared by the API layer."""

import math

_UNITS = ["B", "KB", "MB", "GB", "TB", "PB", "EB"]


def human_bytes(size: int) -> str:
    """Format a byte count with binary units, e.g. 1536 -> "1.5KB"."""
    if size <= 0:
        return "0B"
    exp = min(int(math.log(size, 1024)), len(_UNITS) - 1)
    # math.log can land on the wrong side of an exact power of 1024
    if exp + 1 < len(_UNITS) and size >= 1024 ** (exp + 1):
        exp += 1
    elif exp > 0 and size < 1024 ** exp:
        exp -= 1
    value = size / 1024 ** exp
    return str(value)[:4].rstrip(".") + _UNITS[exp]
