"""
Kubernetes resource quantity parsing and formatting
"""
from typing import Optional

_BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "Pi": 1024 ** 5,
    "Ei": 1024 ** 6,
}

_DECIMAL_SUFFIXES = {
    "n": 1e-9,
    "u": 1e-6,
    "m": 1e-3,
    "k": 1e3,
    "M": 1e6,
    "G": 1e9,
    "T": 1e12,
    "P": 1e15,
    "E": 1e18,
}


def parse_quantity(value: Optional[str]) -> float:
    """Parse a quantity string (``250m``, ``1.5``, ``128Mi``) to its base unit"""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if not text:
        raise ValueError("empty quantity")

    for suffix, factor in _BINARY_SUFFIXES.items():
        if text.endswith(suffix):
            return float(text[:-2]) * factor

    suffix = text[-1]
    if suffix in _DECIMAL_SUFFIXES:
        return float(text[:-1]) * _DECIMAL_SUFFIXES[suffix]

    try:
        return float(text)
    except ValueError:
        raise ValueError(f"invalid quantity: {value!r}")


def cpu_to_millicores(value: Optional[str]) -> int:
    return int(round(parse_quantity(value) * 1000))


def memory_to_bytes(value: Optional[str]) -> int:
    return int(round(parse_quantity(value)))


def format_cpu(millicores: int) -> str:
    """Format millicores the way the API server does (``250m``, ``2``)"""
    if millicores % 1000 == 0:
        return str(millicores // 1000)
    return f"{millicores}m"


def format_memory(num_bytes: int) -> str:
    """Format bytes using the largest exact binary suffix"""
    if num_bytes == 0:
        return "0"
    for suffix, factor in reversed(list(_BINARY_SUFFIXES.items())):
        if num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    return str(num_bytes)


def quantities_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two quantities by value rather than by spelling"""
    if a is None or b is None:
        return a is None and b is None
    try:
        return abs(parse_quantity(a) - parse_quantity(b)) < 1e-9
    except ValueError:
        return a == b
