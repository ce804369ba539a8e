"""
Deterministic bucket assignment for rollouts and experiments.

Every engine instance (browser, backend, worker) must place the same subject
in the same bucket without talking to each other, so the fold is fixed:

    h = 0
    for each UTF-16 code unit c of "{subject_id}:{key}":
        h = int32((h << 5) - h + c)        # h * 31 + c, wrapping
    bucket = abs(h) % 100

Changing any step moves subjects between rollout and experiment arms.
"""

from __future__ import annotations

BUCKET_COUNT = 100

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


def _to_int32(value: int) -> int:
    """Truncate to a signed 32-bit integer (two's complement wraparound)."""
    value &= _INT32_MASK
    if value >= _INT32_SIGN:
        value -= 1 << 32
    return value


def _utf16_code_units(text: str) -> list[int]:
    # astral characters are two UTF-16 code units and fold twice
    data = text.encode("utf-16-le")
    return [int.from_bytes(data[i:i + 2], "little") for i in range(0, len(data), 2)]


def assignment_hash(subject_id: str, key: str) -> int:
    """Return the signed 32-bit fold of ``"{subject_id}:{key}"``."""
    h = 0
    for code_unit in _utf16_code_units(f"{subject_id}:{key}"):
        h = _to_int32((h << 5) - h + code_unit)
    return h


def bucket(subject_id: str, key: str) -> int:
    """
    Map a (subject, key) pair to a stable integer in ``[0, 100)``.

    Example:
        >>> bucket("user-123", "dark_mode")
        30
    """
    return abs(assignment_hash(subject_id, key)) % BUCKET_COUNT
