"""Integer helpers used by the wireless stack buffer arithmetic."""

from __future__ import annotations

from collections.abc import Sequence

_U32_MASK = 0xFFFFFFFF


def divf(x: int, y: int) -> int:
    """Integer division truncated toward zero."""
    quotient = abs(x) // abs(y)
    return quotient if (x < 0) == (y < 0) else -quotient


def divc(x: int, y: int) -> int:
    """Integer division rounded up (for non-negative operands)."""
    return divf(x + y - 1, y)


def divr(x: int, y: int) -> int:
    """Integer division rounded to nearest (for non-negative operands)."""
    return divf(x + divf(y, 2), y)


def shrr(x: int, n: int) -> int:
    """Shift ``x`` right by ``n`` bits, rounding to nearest."""
    if n < 1:
        raise ValueError("shift amount must be at least 1")
    return ((x >> (n - 1)) + 1) >> 1


def bitn(words: Sequence[int], n: int) -> int:
    """Return bit ``n`` of a bitmap held in 32-bit words."""
    return (words[n // 32] >> (n % 32)) & 1


def bitn_set(words: Sequence[int], n: int, b: int) -> list[int]:
    """Return a copy of the bitmap with ``b`` OR-ed in at bit ``n``."""
    result = list(words)
    result[n // 32] |= ((b & _U32_MASK) << (n % 32)) & _U32_MASK
    return result


def mod_inc(a: int, m: int) -> int:
    """Increment ``a`` modulo ``m``."""
    a += 1
    return 0 if a >= m else a


def mod_dec(a: int, m: int) -> int:
    """Decrement ``a`` modulo ``m``."""
    if a == 0:
        a = m
    return a - 1


def mod_add(a: int, b: int, m: int) -> int:
    """Add ``b`` to ``a`` modulo ``m``, both assumed below ``m``."""
    a += b
    return a - m if a >= m else a


def mod_sub(a: int, b: int, m: int) -> int:
    """Subtract ``b`` from ``a`` modulo ``m``, both assumed below ``m``."""
    return mod_add(a, m - b, m)