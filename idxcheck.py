# ─────────────────────────────────────────────────────────────
#  IDX Array Validator
#  > Darin Tanner, Elijah Tribhuwan, Sharad Sreekanth
#  Copyright (c) 2025 Quantius AI LLC.
#  License: MIT
#
#  Permission is hereby granted, free of charge, to any person obtaining
#  a copy of this software and associated documentation files (the
#  “Software”), to deal in the Software without restriction, subject to
#  the MIT License.
#
#  SPDX-License-Identifier: MIT
# ─────────────────────────────────────────────────────────────

"""Structural validation of IDX array buffers.

An IDX buffer is a 4-byte prefix (two reserved zero bytes, a type code and
a dimension count), a table of big-endian ``uint32`` dimension sizes, and
the raw element payload.  :func:`validate` checks that the declared shape
and element type account for the buffer length exactly, without decoding
any element values.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Tuple, Union

import numpy as np

__all__ = [
    "validate",
    "is_valid_idx",
    "get_idx_info",
    "read_header",
    "element_width",
    "dtype_for",
    "required_length",
    "checked_add",
    "checked_mul",
    "IdxHeader",
    "ValidationError",
    "Truncated",
    "OverAllocated",
    "BadPadding",
    "UnknownTypeCode",
    "Overflow",
    "TYPE_CODES",
    "SIZE_MAX",
]

logger = logging.getLogger(__name__)

BufferLike = Union[bytes, bytearray, memoryview]

# ---------------------------------------------------------------------
# Format constants
# ---------------------------------------------------------------------

_PREFIX = struct.Struct(">HBB")  # reserved(2) | type code(1) | rank(1)
_DIM = struct.Struct(">I")

PREFIX_SIZE = _PREFIX.size
DIM_SIZE = _DIM.size

# Element types, keyed by the byte at offset 2.  Payloads are big-endian.
_CODE_TO_DTYPE: dict[int, str] = {
    0x08: ">u1",
    0x09: ">i1",
    0x0B: ">i2",
    0x0C: ">i4",
    0x0D: ">f4",
    0x0E: ">f8",
}
_CODE_TO_NAME: dict[int, str] = {
    0x08: "uint8",
    0x09: "int8",
    0x0B: "int16",
    0x0C: "int32",
    0x0D: "float32",
    0x0E: "float64",
}
_CODE_TO_WIDTH: dict[int, int] = {
    code: np.dtype(fmt).itemsize for code, fmt in _CODE_TO_DTYPE.items()
}

TYPE_CODES: Mapping[int, str] = MappingProxyType(_CODE_TO_NAME)

# Widest native unsigned size on this host (2**64 - 1 on 64-bit builds).
SIZE_MAX: int = int(np.iinfo(np.uintp).max)

# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------


class ValidationError(ValueError):
    """Base class for every reason a buffer is rejected."""

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.args))

    def __reduce__(self):
        return type(self), ()


class Truncated(ValidationError):
    def __init__(self) -> None:
        super().__init__("Buffer is shorter than its header or payload requires")


class OverAllocated(ValidationError):
    def __init__(self, declared: int, actual: int) -> None:
        super().__init__(
            f"Buffer is {actual} bytes but its header declares {declared}"
        )
        self.declared = declared
        self.actual = actual

    def __reduce__(self):
        return type(self), (self.declared, self.actual)


class BadPadding(ValidationError):
    def __init__(self) -> None:
        super().__init__("Reserved bytes at offsets 0-1 must be zero")


class UnknownTypeCode(ValidationError):
    def __init__(self, code: int) -> None:
        super().__init__(f"Unrecognized type code 0x{code:02x}")
        self.code = code

    def __reduce__(self):
        return type(self), (self.code,)


class Overflow(ValidationError):
    def __init__(self) -> None:
        super().__init__("Declared bounds cannot be represented in a native size")


# ---------------------------------------------------------------------
# Checked arithmetic
# ---------------------------------------------------------------------


def checked_mul(a: int, b: int, *, size_max: int = SIZE_MAX) -> int:
    """Return ``a * b``, raising :class:`Overflow` if it exceeds *size_max*."""
    result = a * b
    if result > size_max:
        raise Overflow()
    return result


def checked_add(a: int, b: int, *, size_max: int = SIZE_MAX) -> int:
    """Return ``a + b``, raising :class:`Overflow` if it exceeds *size_max*."""
    result = a + b
    if result > size_max:
        raise Overflow()
    return result


def _checked_product(values: Iterable[int], size_max: int) -> int:
    acc = 1
    for v in values:
        acc = checked_mul(acc, v, size_max=size_max)
    return acc


def _header_length(rank: int, size_max: int) -> int:
    return checked_add(
        PREFIX_SIZE, checked_mul(rank, DIM_SIZE, size_max=size_max),
        size_max=size_max,
    )


# ---------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class IdxHeader:
    """Fields read from the fixed prefix and dimension table."""

    type_code: int
    dimensions: Tuple[int, ...]

    @property
    def rank(self) -> int:
        return len(self.dimensions)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.dimensions

    @property
    def header_length(self) -> int:
        return _header_length(self.rank, SIZE_MAX)


def _byte_view(buffer: BufferLike) -> memoryview:
    view = memoryview(buffer)
    if not view.c_contiguous:
        view = memoryview(view.tobytes())
    if view.ndim != 1 or view.format != "B":
        view = view.cast("B")
    return view


def read_header(buffer: BufferLike, *, size_max: int = SIZE_MAX) -> IdxHeader:
    """Parse the prefix and dimension table of *buffer*.

    The type code is returned as-is; resolving it is left to
    :func:`element_width`.
    """
    view = _byte_view(buffer)
    if len(view) < PREFIX_SIZE:
        raise Truncated()

    reserved, type_code, rank = _PREFIX.unpack_from(view, 0)
    if reserved:
        raise BadPadding()

    header_length = _header_length(rank, size_max)
    if len(view) < header_length:
        raise Truncated()

    dims = tuple(d for (d,) in _DIM.iter_unpack(view[PREFIX_SIZE:header_length]))
    return IdxHeader(type_code=type_code, dimensions=dims)


# ---------------------------------------------------------------------
# Type resolution
# ---------------------------------------------------------------------


def element_width(type_code: int) -> int:
    """Return the byte width of one element of *type_code*."""
    try:
        return _CODE_TO_WIDTH[type_code]
    except KeyError:
        raise UnknownTypeCode(type_code) from None


def dtype_for(type_code: int) -> np.dtype:
    """Return the big-endian NumPy dtype a decoder should use for *type_code*."""
    try:
        return np.dtype(_CODE_TO_DTYPE[type_code])
    except KeyError:
        raise UnknownTypeCode(type_code) from None


# ---------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------


def required_length(header: IdxHeader, *, size_max: int = SIZE_MAX) -> int:
    """Total byte length implied by *header*, overflow-checked at every step."""
    width = element_width(header.type_code)
    count = _checked_product(header.dimensions, size_max)
    payload = checked_mul(count, width, size_max=size_max)
    return checked_add(
        _header_length(header.rank, size_max), payload, size_max=size_max
    )


def _check(buffer: BufferLike, size_max: int) -> Tuple[IdxHeader, int]:
    if size_max < 0:
        raise ValueError("size_max must be non-negative")
    view = _byte_view(buffer)
    header = read_header(view, size_max=size_max)
    declared = required_length(header, size_max=size_max)
    actual = len(view)
    if actual < declared:
        raise Truncated()
    if actual > declared:
        raise OverAllocated(declared=declared, actual=actual)
    return header, declared


# ---------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------


def validate(buffer: BufferLike, *, size_max: int = SIZE_MAX) -> None:
    """Check that *buffer* is a well-formed IDX array.

    Returns ``None`` on success and raises the first
    :class:`ValidationError` encountered otherwise.  The buffer is never
    modified or retained.
    """
    try:
        header, total = _check(buffer, size_max)
    except ValidationError as exc:
        logger.debug("Rejected IDX buffer: %s (%s)", type(exc).__name__, exc)
        raise
    logger.debug(
        "Accepted IDX buffer: %s%s, %d bytes",
        _CODE_TO_NAME[header.type_code],
        list(header.shape),
        total,
    )


def is_valid_idx(buffer: BufferLike, *, size_max: int = SIZE_MAX) -> bool:
    """Return True if :func:`validate` would accept *buffer*."""
    try:
        _check(buffer, size_max)
    except ValidationError:
        return False
    return True


def get_idx_info(buffer: BufferLike, *, size_max: int = SIZE_MAX) -> dict[str, Any]:
    """Validate *buffer* and return its header metadata without reading the payload."""
    header, total = _check(buffer, size_max)
    width = element_width(header.type_code)
    return {
        "type_code": header.type_code,
        "type_name": _CODE_TO_NAME[header.type_code],
        "dtype": _CODE_TO_DTYPE[header.type_code],
        "element_width": width,
        "shape": header.shape,
        "rank": header.rank,
        "element_count": _checked_product(header.dimensions, size_max),
        "header_length": header.header_length,
        "payload_bytes": total - header.header_length,
        "total_bytes": total,
    }
