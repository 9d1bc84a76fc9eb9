"""Internet checksum helpers (RFC 1071) used for IP and TCP offload handling."""

from __future__ import annotations

import struct

_MASK64 = (1 << 64) - 1


def checksum_no_fold(data: bytes, initial: int = 0) -> int:
    """Return the one's complement sum of ``data`` added to ``initial``, unfolded.

    The data is summed as big-endian 32-bit words, then a 16-bit word, then a
    trailing byte padded on the right with zero.
    """
    view = memoryview(data)
    total = initial
    words32 = len(view) // 4
    if words32:
        total += sum(struct.unpack(f">{words32}I", view[: words32 * 4]))
    rest = view[words32 * 4 :]
    if len(rest) >= 2:
        total += (rest[0] << 8) | rest[1]
        rest = rest[2:]
    if len(rest) == 1:
        total += rest[0] << 8
    return total & _MASK64


def checksum(data: bytes, initial: int = 0) -> int:
    """Return the 16-bit folded one's complement sum of ``data`` and ``initial``."""
    acc = checksum_no_fold(data, initial)
    for _ in range(4):
        acc = (acc >> 16) + (acc & 0xFFFF)
    return acc & 0xFFFF


def pseudo_header_checksum_no_fold(
    protocol: int, src_addr: bytes, dst_addr: bytes, total_len: int
) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo header."""
    acc = checksum_no_fold(src_addr, 0)
    acc = checksum_no_fold(dst_addr, acc)
    acc = checksum_no_fold(bytes((0, protocol & 0xFF)), acc)
    return checksum_no_fold(struct.pack(">H", total_len & 0xFFFF), acc)