"""TCP segmentation and receive coalescing for virtio-net framed TUN I/O.

Packets written to a TUN device opened with a virtio-net header may be
coalesced (GRO) into larger segments described by that header, and packets
read from it may arrive as one large segment that has to be split (TSO).
"""

from __future__ import annotations

import dataclasses
import enum
import struct
from dataclasses import dataclass, field
from typing import MutableSequence, Optional, Sequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .device import TooManySegmentsError

IPPROTO_TCP = 6

VIRTIO_NET_HDR_F_NEEDS_CSUM = 1
VIRTIO_NET_HDR_GSO_NONE = 0
VIRTIO_NET_HDR_GSO_TCPV4 = 1
VIRTIO_NET_HDR_GSO_TCPV6 = 4

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPV4_FLAG_MORE_FRAGMENTS = 0x20
IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8

_MAX_UINT16 = (1 << 16) - 1
_MASK32 = (1 << 32) - 1

_HDR_FORMAT = "=BBHHHH"
VIRTIO_NET_HDR_LEN = struct.calcsize(_HDR_FORMAT)


@dataclass
class VirtioNetHdr:
    """The virtio-net header that prefixes each packet on a vnet TUN device."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, data: bytes) -> "VirtioNetHdr":
        """Parse a header from the first bytes of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*struct.unpack_from(_HDR_FORMAT, data, 0))

    def encode(self, buf: bytearray) -> None:
        """Write the header into the first bytes of ``buf``."""
        self._pack_into(buf, 0)

    def _pack_into(self, buf: bytearray, at: int) -> None:
        if at < 0 or len(buf) - at < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        struct.pack_into(
            _HDR_FORMAT,
            buf,
            at,
            self.flags & 0xFF,
            self.gso_type & 0xFF,
            self.hdr_len & 0xFFFF,
            self.gso_size & 0xFFFF,
            self.csum_start & 0xFFFF,
            self.csum_offset & 0xFFFF,
        )


@dataclass(frozen=True)
class FlowKey:
    """Identifies a TCP flow; differing ACK values are kept as separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int


def _flow_key(pkt: bytes, src_addr: int, dst_addr: int, tcph_offset: int) -> FlowKey:
    addr_size = dst_addr - src_addr
    src_port, dst_port = struct.unpack_from(">HH", pkt, tcph_offset)
    (rx_ack,) = struct.unpack_from(">I", pkt, tcph_offset + 8)
    return FlowKey(
        src_addr=bytes(pkt[src_addr:dst_addr]),
        dst_addr=bytes(pkt[dst_addr : dst_addr + addr_size]),
        src_port=src_port,
        dst_port=dst_port,
        rx_ack=rx_ack,
    )


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet while a batch is being coalesced."""

    key: FlowKey
    sent_seq: int
    bufs_index: int
    num_merged: int = 0
    gso_size: int = 0
    iph_len: int = 0
    tcph_len: int = 0
    psh_set: bool = False


@dataclass
class TCPGROTable:
    """Flows and their candidate packets for one batch of GRO evaluation."""

    items_by_flow: dict[FlowKey, list[TCPGROItem]] = field(default_factory=dict)

    def lookup_or_insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> Optional[list[TCPGROItem]]:
        """Return the items of the packet's flow, or insert it and return None."""
        key = _flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Add an item describing ``pkt`` to its flow."""
        key = _flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        (sent_seq,) = struct.unpack_from(">I", pkt, tcph_offset + 4)
        item = TCPGROItem(
            key=key,
            sent_seq=sent_seq,
            bufs_index=bufs_index,
            gso_size=len(pkt) - tcph_offset - tcph_len,
            iph_len=tcph_offset,
            tcph_len=tcph_len,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: TCPGROItem, i: int) -> None:
        """Replace the item at position ``i`` of its flow."""
        self.items_by_flow[item.key][i] = item

    def delete_at(self, key: FlowKey, i: int) -> None:
        """Remove the item at position ``i`` of the flow ``key``."""
        del self.items_by_flow[key][i]

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()


class _CanCoalesce(enum.IntEnum):
    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class _CoalesceResult(enum.IntEnum):
    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def _can_coalesce(
    pkt: bytes,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TCPGROItem,
    bufs: Sequence[bytearray],
    offset: int,
) -> _CanCoalesce:
    target = bufs[item.bufs_index]
    t = offset
    if tcph_len != item.tcph_len:
        return _CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        if pkt[iph_len + 20 : iph_len + tcph_len] != target[t + item.iph_len + 20 : t + iph_len + tcph_len]:
            return _CanCoalesce.UNAVAILABLE
    if pkt[0] >> 4 == 6:
        if pkt[0] != target[t] or pkt[1] >> 4 != target[t + 1] >> 4:
            return _CanCoalesce.UNAVAILABLE
        if pkt[7] != target[t + 7]:
            return _CanCoalesce.UNAVAILABLE
    else:
        if pkt[1] != target[t + 1]:
            return _CanCoalesce.UNAVAILABLE
        if pkt[6] >> 5 != target[t + 6] >> 5:
            return _CanCoalesce.UNAVAILABLE
        if pkt[8] != target[t + 8]:
            return _CanCoalesce.UNAVAILABLE

    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & _MAX_UINT16
    if seq == (item.sent_seq + lhs_len) & _MASK32:
        if item.psh_set:
            return _CanCoalesce.UNAVAILABLE
        if (len(target) - t - iph_len - tcph_len) % item.gso_size != 0:
            return _CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return _CanCoalesce.UNAVAILABLE
        return _CanCoalesce.APPEND
    if (seq + gso_size) & _MASK32 == item.sent_seq:
        if psh_set:
            return _CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return _CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return _CanCoalesce.UNAVAILABLE
        return _CanCoalesce.PREPEND
    return _CanCoalesce.UNAVAILABLE


def _tcp_checksum_valid(pkt: bytes, iph_len: int, is_v6: bool) -> bool:
    src_at, addr_size = (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)
    psum = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + addr_size * 2],
        (len(pkt) - iph_len) & _MAX_UINT16,
    )
    return (~checksum(pkt[iph_len:], psum)) & 0xFFFF == 0


def _coalesce(
    mode: _CanCoalesce,
    pkt: bytes,
    pkt_i: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    offset: int,
    is_v6: bool,
) -> _CoalesceResult:
    headers_len = item.iph_len + item.tcph_len
    item_buf = bufs[item.bufs_index]
    coalesced_len = len(item_buf) - offset + len(pkt) - headers_len
    if offset + coalesced_len > _MAX_UINT16:
        return _CoalesceResult.INSUFFICIENT_CAP

    if mode is _CanCoalesce.PREPEND:
        if psh_set:
            return _CoalesceResult.PSH_ENDING
        if item.num_merged == 0 and not _tcp_checksum_valid(bytes(item_buf[offset:]), item.iph_len, is_v6):
            return _CoalesceResult.ITEM_INVALID_CSUM
        if not _tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return _CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        bufs[pkt_i].extend(item_buf[offset + headers_len :])
        # The item's index is the one already tracked for writing.
        bufs[item.bufs_index], bufs[pkt_i] = bufs[pkt_i], bufs[item.bufs_index]
    else:
        if item.num_merged == 0 and not _tcp_checksum_valid(bytes(item_buf[offset:]), item.iph_len, is_v6):
            return _CoalesceResult.ITEM_INVALID_CSUM
        if not _tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return _CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            item_buf[offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        item_buf.extend(pkt[headers_len:])

    head = bufs[item.bufs_index]
    h = offset
    if gso_size > item.gso_size:
        item.gso_size = gso_size
    hdr = VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        hdr_len=headers_len,
        gso_size=item.gso_size,
        csum_start=item.iph_len,
        csum_offset=16,
    )

    if is_v6:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV6
        struct.pack_into(">H", head, h + 4, (coalesced_len - item.iph_len) & _MAX_UINT16)
    else:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV4
        head[h + 10 : h + 12] = b"\x00\x00"
        struct.pack_into(">H", head, h + 2, coalesced_len & _MAX_UINT16)
        iph_csum = ~checksum(head[h : h + item.iph_len]) & 0xFFFF
        struct.pack_into(">H", head, h + 10, iph_csum)
    hdr._pack_into(head, offset - VIRTIO_NET_HDR_LEN)

    addr_len, addr_offset = (16, IPV6_SRC_ADDR_OFFSET) if is_v6 else (4, IPV4_SRC_ADDR_OFFSET)
    src_at = h + addr_offset
    psum = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        head[src_at : src_at + addr_len],
        head[src_at + addr_len : src_at + addr_len * 2],
        (coalesced_len - item.iph_len) & _MAX_UINT16,
    )
    struct.pack_into(">H", head, h + hdr.csum_start + hdr.csum_offset, checksum(b"", psum))

    item.num_merged = (item.num_merged + 1) & _MAX_UINT16
    return _CoalesceResult.SUCCESS


def _tcp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_i: int,
    table: TCPGROTable,
    is_v6: bool,
) -> bool:
    """Try to coalesce ``bufs[pkt_i]``; True means it was merged into another."""
    pkt = bytes(bufs[pkt_i][offset:])
    if len(pkt) > _MAX_UINT16:
        return False
    if is_v6:
        iph_len = 40
        (payload_len,) = struct.unpack_from(">H", pkt, 4)
        if payload_len != len(pkt) - iph_len:
            return False
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        (total_len,) = struct.unpack_from(">H", pkt, 2)
        if total_len != len(pkt):
            return False
    if len(pkt) < iph_len:
        return False
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return False
    if len(pkt) < iph_len + tcph_len:
        return False
    if not is_v6:
        if pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7]:
            return False
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return False
        psh_set = True
    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return False
    (seq,) = struct.unpack_from(">I", pkt, iph_len + 4)
    src_addr_offset, addr_len = (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)
    items = table.lookup_or_insert(
        pkt, src_addr_offset, src_addr_offset + addr_len, iph_len, tcph_len, pkt_i
    )
    if items is None:
        return False
    # Reverse order favours in-order arrival and keeps lower indices stable
    # when an item is deleted.
    for i in range(len(items) - 1, -1, -1):
        item = dataclasses.replace(items[i])
        can = _can_coalesce(pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset)
        if can is _CanCoalesce.UNAVAILABLE:
            continue
        result = _coalesce(can, pkt, pkt_i, gso_size, seq, psh_set, item, bufs, offset, is_v6)
        if result is _CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return True
        if result is _CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result is _CoalesceResult.PKT_INVALID_CSUM:
            return False
    table.insert(pkt, src_addr_offset, src_addr_offset + addr_len, iph_len, tcph_len, pkt_i)
    return False


def is_tcp4_no_ip_options(b: bytes) -> bool:
    """Report whether ``b`` is an IPv4 TCP packet without IP options."""
    return len(b) >= 40 and b[0] >> 4 == 4 and b[0] & 0x0F == 5 and b[9] == IPPROTO_TCP


def is_tcp6_no_eh(b: bytes) -> bool:
    """Report whether ``b`` is an IPv6 TCP packet without extension headers."""
    return len(b) >= 60 and b[0] >> 4 == 6 and b[6] == IPPROTO_TCP


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp4_table: TCPGROTable,
    tcp6_table: TCPGROTable,
) -> list[int]:
    """Coalesce the packets in ``bufs`` and return the indices left to write.

    Each packet starts at ``offset``; the virtio-net header is written in the
    bytes just before it. ``bufs`` may have elements swapped and extended.
    """
    to_write: list[int] = []
    for i in range(len(bufs)):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(bufs[i]) - 1:
            raise ValueError("invalid offset")
        coalesced = False
        packet = bufs[i][offset:]
        if is_tcp4_no_ip_options(packet):
            coalesced = _tcp_gro(bufs, offset, i, tcp4_table, False)
        elif is_tcp6_no_eh(packet):
            coalesced = _tcp_gro(bufs, offset, i, tcp6_table, True)
        if not coalesced:
            VirtioNetHdr()._pack_into(bufs[i], offset - VIRTIO_NET_HDR_LEN)
            to_write.append(i)
    return to_write


def tcp_tso(
    packet: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: Sequence[bytearray],
    out_offset: int,
) -> list[int]:
    """Split a large TCP segment into ``out_bufs`` and return each packet's size.

    ``packet`` has its checksum fields cleared in place. Raises
    :class:`TooManySegmentsError` when ``out_bufs`` is too short.
    """
    iph_len = hdr.csum_start
    is_v4 = hdr.gso_type == VIRTIO_NET_HDR_GSO_TCPV4
    if is_v4:
        packet[10:12] = b"\x00\x00"
        src_addr_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    else:
        src_addr_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    tcp_csum_at = hdr.csum_start + hdr.csum_offset
    packet[tcp_csum_at : tcp_csum_at + 2] = b"\x00\x00"
    (first_seq,) = struct.unpack_from(">I", packet, hdr.csum_start + 4)
    src_addr = bytes(packet[src_addr_offset : src_addr_offset + addr_len])
    dst_addr = bytes(packet[src_addr_offset + addr_len : src_addr_offset + addr_len * 2])
    tcph_len = hdr.hdr_len - hdr.csum_start

    sizes: list[int] = []
    data_at = hdr.hdr_len
    i = 0
    while data_at < len(packet):
        if i == len(out_bufs):
            raise TooManySegmentsError()
        end = min(data_at + hdr.gso_size, len(packet))
        seg_len = end - data_at
        total_len = hdr.hdr_len + seg_len
        out = out_bufs[i]
        o = out_offset
        if len(out) < o + total_len:
            raise ValueError(f"output buffer {i} too small for {total_len} bytes at offset {o}")

        out[o : o + iph_len] = packet[:iph_len]
        if is_v4:
            if i > 0:
                (ip_id,) = struct.unpack_from(">H", out, o + 4)
                struct.pack_into(">H", out, o + 4, (ip_id + i) & _MAX_UINT16)
            struct.pack_into(">H", out, o + 2, total_len & _MAX_UINT16)
            struct.pack_into(">H", out, o + 10, ~checksum(out[o : o + iph_len]) & 0xFFFF)
        else:
            struct.pack_into(">H", out, o + 4, (total_len - iph_len) & _MAX_UINT16)

        out[o + hdr.csum_start : o + hdr.hdr_len] = packet[hdr.csum_start : hdr.hdr_len]
        tcp_seq = (first_seq + ((hdr.gso_size * i) & _MAX_UINT16)) & _MASK32
        struct.pack_into(">I", out, o + hdr.csum_start + 4, tcp_seq)
        if end != len(packet):
            out[o + hdr.csum_start + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF

        out[o + hdr.hdr_len : o + total_len] = packet[data_at:end]

        psum = pseudo_header_checksum_no_fold(
            IPPROTO_TCP, src_addr, dst_addr, (tcph_len + seg_len) & _MAX_UINT16
        )
        tcp_csum = ~checksum(out[o + hdr.csum_start : o + total_len], psum) & 0xFFFF
        struct.pack_into(">H", out, o + hdr.csum_start + hdr.csum_offset, tcp_csum)

        sizes.append(total_len)
        data_at += hdr.gso_size
        i += 1
    return sizes


def gso_none_checksum(packet: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place, starting at ``csum_start``.

    The value already at the checksum field, typically the pseudo-header sum,
    is folded into the result.
    """
    at = (csum_start + csum_offset) & _MAX_UINT16
    (initial,) = struct.unpack_from(">H", packet, at)
    packet[at : at + 2] = b"\x00\x00"
    struct.pack_into(">H", packet, at, ~checksum(packet[csum_start:], initial) & 0xFFFF)