"""
Parsing of human readable memory sizes (``512m``, ``2g``) into bytes.
"""
import re
from typing import Union

_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmgt]?)(?:i?b)?\s*$", re.IGNORECASE)


def parse_size(value: Union[str, int, float]) -> int:
    """
    Converts a size to bytes. Units are binary, as the container runtime reads them.

    :param value: An integer byte count or a string such as ``512m`` or ``2GiB``.
    :return: Size in bytes.
    :raises ValueError: If the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit.lower()])
