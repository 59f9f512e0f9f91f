"""Resource quota parsing.

Human units (``"512m"``, ``"2g"``, ``"0.5"``) to runtime-native quantities.
Malformed or non-positive values raise a CONFIGURATION_ERROR.
"""

import math
import re

from secure_assessment.exceptions import configuration_error

_SIZE = re.compile(r"^(\d+)([kmg]?)$", re.IGNORECASE)
_CPU = re.compile(r"^(\d+(?:\.\d+)?|\.\d+)$")

_UNIT_BYTES = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}

MIN_CPU_QUOTA_US = 1000


def _parse_size(value: str | int, what: str) -> int:
    text = str(value).strip()
    match = _SIZE.match(text)
    if not match:
        raise configuration_error(
            f"{what} limit {value!r} must be a whole number with optional k/m/g suffix",
            field=what,
            value=str(value),
        )
    amount = int(match.group(1)) * _UNIT_BYTES[match.group(2).lower()]
    if amount <= 0:
        raise configuration_error(f"{what} limit must be positive", field=what, value=str(value))
    return amount


def parse_memory_limit(value: str | int) -> int:
    """Memory quota in bytes. Unsuffixed numbers are bytes."""
    return _parse_size(value, "memory")


def parse_disk_limit(value: str | int) -> int:
    """Disk quota in bytes. Unsuffixed numbers are bytes."""
    return _parse_size(value, "disk_space")


def parse_cpu_limit(value: str | float) -> float:
    """CPU quota in cores, e.g. ``"0.5"``."""
    text = str(value).strip()
    if not _CPU.match(text):
        raise configuration_error(f"cpu limit {value!r} must be a decimal number", field="cpu", value=text)
    cpus = float(text)
    if cpus <= 0 or not math.isfinite(cpus):
        raise configuration_error("cpu limit must be positive", field="cpu", value=text)
    return cpus


def cpu_quota_for(cpus: float, period_us: int) -> int:
    """CFS quota in microseconds for ``cpus`` cores over ``period_us``."""
    return max(MIN_CPU_QUOTA_US, int(round(cpus * period_us)))


def format_memory_limit(amount: int) -> str:
    """Shortest exact k/m/g rendering of a byte count."""
    for suffix in ("g", "m", "k"):
        unit = _UNIT_BYTES[suffix]
        if amount >= unit and amount % unit == 0:
            return f"{amount // unit}{suffix}"
    return str(amount)
