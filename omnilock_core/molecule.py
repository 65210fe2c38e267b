"""
Minimal molecule serialization for the CKB structures the signer touches.

Molecule layouts used here:
  - fixvec  : u32 item count followed by fixed-size items
  - dynvec  : u32 total size, u32 offset per item, then the items
  - table   : same header shape as dynvec, one slot per field
  - option  : empty for ``None``, otherwise the inner value

All integers are little endian.
"""

from __future__ import annotations

import struct

from omnilock_core.errors import MalformedWitness

_U32 = struct.Struct("<I")


def pack_u32(value: int) -> bytes:
    return _U32.pack(value)


def pack_u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def unpack_u32(data: bytes, offset: int = 0) -> int:
    return _U32.unpack_from(data, offset)[0]


def pack_fixvec(items: list[bytes]) -> bytes:
    return pack_u32(len(items)) + b"".join(items)


def pack_bytes(data: bytes) -> bytes:
    """Molecule ``Bytes`` (a fixvec of ``byte``)."""
    return pack_u32(len(data)) + bytes(data)


def pack_dynvec(items: list[bytes]) -> bytes:
    header_size = 4 * (len(items) + 1)
    offsets = []
    cursor = header_size
    for item in items:
        offsets.append(cursor)
        cursor += len(item)
    if not items:
        return pack_u32(4)
    return pack_u32(cursor) + b"".join(pack_u32(o) for o in offsets) + b"".join(items)


pack_table = pack_dynvec


def unpack_table(data: bytes, field_count: int) -> list[bytes]:
    """
    Split a table into its raw fields.

    Extra trailing fields (compatible extensions) are ignored; fewer fields
    than expected is an error.
    """
    data = bytes(data)
    if len(data) < 4:
        raise MalformedWitness("molecule table shorter than its header")
    total = unpack_u32(data)
    if total != len(data):
        raise MalformedWitness(
            f"molecule table size {total} does not match buffer size {len(data)}"
        )
    if total == 4:
        if field_count:
            raise MalformedWitness("molecule table has no fields")
        return []
    if total < 8:
        raise MalformedWitness("molecule table header truncated")
    first = unpack_u32(data, 4)
    if first % 4 or first < 8 or first > total:
        raise MalformedWitness("invalid molecule table header")
    actual_count = first // 4 - 1
    if actual_count < field_count:
        raise MalformedWitness(
            f"molecule table has {actual_count} fields, expected {field_count}"
        )
    offsets = [unpack_u32(data, 4 * (i + 1)) for i in range(actual_count)]
    offsets.append(total)
    fields = []
    for i in range(field_count):
        start, end = offsets[i], offsets[i + 1]
        if start > end or end > total:
            raise MalformedWitness("molecule table offsets out of order")
        fields.append(data[start:end])
    return fields


def unpack_bytes(data: bytes) -> bytes:
    if len(data) < 4:
        raise MalformedWitness("molecule Bytes shorter than its header")
    size = unpack_u32(data)
    if size + 4 != len(data):
        raise MalformedWitness("molecule Bytes length mismatch")
    return bytes(data[4:])


def unpack_bytes_opt(data: bytes) -> bytes | None:
    if not data:
        return None
    return unpack_bytes(data)


# ===================================================================
#  WitnessArgs
# ===================================================================

def pack_witness_args(
    lock: bytes | None = None,
    input_type: bytes | None = None,
    output_type: bytes | None = None,
) -> bytes:
    fields = [b"" if f is None else pack_bytes(f) for f in (lock, input_type, output_type)]
    return pack_table(fields)


def unpack_witness_args(data: bytes) -> tuple[bytes | None, bytes | None, bytes | None]:
    """Return ``(lock, input_type, output_type)`` of a WitnessArgs table."""
    lock, input_type, output_type = unpack_table(data, 3)
    return unpack_bytes_opt(lock), unpack_bytes_opt(input_type), unpack_bytes_opt(output_type)
