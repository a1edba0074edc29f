"""Vector math — magnitude, normalization, similarity, and float32 packing.

Stored vectors are normalized before packing, so ranking a candidate costs a
single dot product against the (normalized) query.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

# Little-endian float32, 4 bytes per component.
_DTYPE = np.dtype("<f4")


def _as_array(v: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(v, dtype=np.float64)


def magnitude(v: Sequence[float] | np.ndarray) -> float:
    """Euclidean length of *v*."""
    arr = _as_array(v)
    if arr.size == 0:
        return 0.0
    return float(np.sqrt(np.dot(arr, arr)))


def normalize(v: Sequence[float] | np.ndarray, mag: float | None = None) -> list[float]:
    """Scale *v* to unit length.

    A zero vector has no direction and is returned unchanged.  Pass *mag*
    when the magnitude is already known.
    """
    arr = _as_array(v)
    if mag is None:
        mag = magnitude(arr)
    if mag == 0.0:
        return arr.tolist()
    return (arr / mag).tolist()


def dot(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Dot product over the shared prefix of *a* and *b*.

    Vectors of different lengths are truncated to the shorter one.
    """
    arr_a = _as_array(a)
    arr_b = _as_array(b)
    n = min(arr_a.size, arr_b.size)
    if n == 0:
        return 0.0
    return float(np.dot(arr_a[:n], arr_b[:n]))


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine of the angle between *a* and *b*, in ``[-1, 1]``.

    Returns ``0.0`` when either vector has zero magnitude.
    """
    mag_a = magnitude(a)
    mag_b = magnitude(b)
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0
    score = dot(a, b) / (mag_a * mag_b)
    return max(-1.0, min(1.0, score))


def pack(v: Sequence[float] | np.ndarray) -> bytes:
    """Encode *v* as little-endian float32 bytes."""
    return np.asarray(v, dtype=_DTYPE).tobytes()


def unpack(data: bytes) -> list[float]:
    """Decode bytes produced by :func:`pack`."""
    if len(data) % _DTYPE.itemsize != 0:
        msg = f"Packed vector length {len(data)} is not a multiple of {_DTYPE.itemsize}"
        raise ValueError(msg)
    return np.frombuffer(data, dtype=_DTYPE).astype(np.float64).tolist()


def unpack_array(data: bytes) -> np.ndarray:
    """Decode packed bytes straight into a float32 array (no list conversion)."""
    if len(data) % _DTYPE.itemsize != 0:
        msg = f"Packed vector length {len(data)} is not a multiple of {_DTYPE.itemsize}"
        raise ValueError(msg)
    return np.frombuffer(data, dtype=_DTYPE)
