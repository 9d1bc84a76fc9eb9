"""Reading packets from a TUN device that prefixes each read with a virtio-net header."""

from __future__ import annotations

from typing import Sequence

from .offload import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
    gso_none_checksum,
    tcp_tso,
)


def handle_virtio_read(data: bytes, bufs: Sequence[bytearray], offset: int) -> list[int]:
    """Split one virtio-net framed read into ``bufs``, each packet at ``offset``.

    Returns the size of each packet placed into ``bufs``, in order. Raises
    :class:`ValueError` for malformed input and
    :class:`~tunoffload.device.TooManySegmentsError` when ``bufs`` is too short.
    """
    hdr = VirtioNetHdr.decode(data)
    packet = bytearray(memoryview(data)[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: finish the checksum from csum_start into csum_offset.
            gso_none_checksum(packet, hdr.csum_start, hdr.csum_offset)
        room = max(len(bufs[0]) - offset, 0)
        if len(packet) > room:
            raise ValueError(f"read len {len(packet)} overflows bufs element len {room}")
        bufs[0][offset : offset + len(packet)] = packet
        return [len(packet)]

    if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")

    if not packet:
        raise ValueError("packet is too short")
    ip_version = packet[0] >> 4
    if ip_version == 4:
        if hdr.gso_type != VIRTIO_NET_HDR_GSO_TCPV4:
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type != VIRTIO_NET_HDR_GSO_TCPV6:
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    if len(packet) <= hdr.csum_start + 12:
        raise ValueError("packet is too short")
    # The kernel's hdr_len may span the whole first packet on the forward
    # path, so derive it from the TCP data offset instead.
    tcp_hlen = (packet[hdr.csum_start + 12] >> 4) * 4
    if tcp_hlen < 20 or tcp_hlen > 60:
        raise ValueError(f"tcp header len is invalid: {tcp_hlen}")
    hdr.hdr_len = (hdr.csum_start + tcp_hlen) & 0xFFFF

    if len(packet) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(packet)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(packet):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(packet)})"
        )

    return tcp_tso(packet, hdr, bufs, offset)