# s3unzip/utils/humanize.py
from typing import Optional


def human_readable_bytes(num: Optional[int]) -> str:
    """1234567 -> '1.2 MB' (SI units). None or negative means the size is unknown."""
    if num is None or num < 0:
        return "unknown size"
    if num < 1000:
        return f"{num} B"
    value = float(num)
    for unit in "kMGTPE":
        value /= 1000.0
        if value < 999.95:
            return f"{value:.1f} {unit}B"
    return f"{value:.1f} EB"
