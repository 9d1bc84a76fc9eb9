import ipaddress
import struct

import pytest

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold
from tunoffload.device import TooManySegmentsError
from tunoffload.offload import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    TCPGROTable,
    VirtioNetHdr,
    gso_none_checksum,
    handle_gro,
    is_tcp4_no_ip_options,
    is_tcp6_no_eh,
    tcp_tso,
)

OFFSET = VIRTIO_NET_HDR_LEN
ACK = 0x10
PSH = 0x08

IP4_A = ("192.0.2.1", 1)
IP4_B = ("192.0.2.2", 1)
IP4_C = ("192.0.2.3", 1)
IP6_A = ("2001:db8::1", 1)
IP6_B = ("2001:db8::2", 1)
IP6_C = ("2001:db8::3", 1)


def _addr(a):
    return ipaddress.ip_address(a).packed


def _encode_tcp(b, at, src_port, dst_port, flags, seq):
    struct.pack_into(">HHIIBBHHH", b, at, src_port, dst_port, seq, 1, 0x50, flags, 3000, 0, 0)


def tcp4_packet(src, dst, flags, segment_size, seq, ttl=64, tos=0, ip_flags=0):
    total = 40 + segment_size
    b = bytearray(OFFSET + total)
    ip = OFFSET
    b[ip] = 0x45
    b[ip + 1] = tos
    struct.pack_into(">H", b, ip + 2, total)
    struct.pack_into(">H", b, ip + 6, ip_flags << 13)
    b[ip + 8] = ttl
    b[ip + 9] = 6
    b[ip + 12 : ip + 16] = _addr(src[0])
    b[ip + 16 : ip + 20] = _addr(dst[0])
    tcp = ip + 20
    _encode_tcp(b, tcp, src[1], dst[1], flags, seq)
    struct.pack_into(">H", b, ip + 10, ~checksum(b[ip : ip + 20]) & 0xFFFF)
    psum = pseudo_header_checksum_no_fold(6, _addr(src[0]), _addr(dst[0]), 20 + segment_size)
    struct.pack_into(">H", b, tcp + 16, ~checksum(b[tcp:], psum) & 0xFFFF)
    return b


def tcp6_packet(src, dst, flags, segment_size, seq, hop_limit=64, traffic_class=0):
    total = 60 + segment_size
    b = bytearray(OFFSET + total)
    ip = OFFSET
    b[ip] = 0x60 | (traffic_class >> 4)
    b[ip + 1] = (traffic_class & 0x0F) << 4
    struct.pack_into(">H", b, ip + 4, segment_size + 20)
    b[ip + 6] = 6
    b[ip + 7] = hop_limit
    b[ip + 8 : ip + 24] = _addr(src[0])
    b[ip + 24 : ip + 40] = _addr(dst[0])
    tcp = ip + 40
    _encode_tcp(b, tcp, src[1], dst[1], flags, seq)
    psum = pseudo_header_checksum_no_fold(6, _addr(src[0]), _addr(dst[0]), 20 + segment_size)
    struct.pack_into(">H", b, tcp + 16, ~checksum(b[tcp:], psum) & 0xFFFF)
    return b


def flip_tcp4_checksum(b):
    at = VIRTIO_NET_HDR_LEN + 20 + 16
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


def _tcp_checksum_ok(pkt, iph_len, v6):
    src_at, size = (8, 16) if v6 else (12, 4)
    psum = pseudo_header_checksum_no_fold(
        6, pkt[src_at : src_at + size], pkt[src_at + size : src_at + 2 * size], len(pkt) - iph_len
    )
    return checksum(pkt[iph_len:], psum) == 0xFFFF


GRO_CASES = [
    (
        "multiple flows",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_C, ACK, 100, 201),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101),
            tcp6_packet(IP6_A, IP6_C, ACK, 100, 201),
        ],
        [0, 2, 3, 5],
        [240, 140, 260, 160],
    ),
    (
        "PSH interleaved",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK | PSH, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 301),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK | PSH, 100, 101),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 201),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 301),
        ],
        [0, 2, 4, 6],
        [240, 240, 260, 260],
    ),
    (
        "coalesceItemInvalidCSum",
        lambda: [
            flip_tcp4_checksum(tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
        ],
        [0, 1],
        [140, 240],
    ),
    (
        "out of order",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
        ],
        [0],
        [340],
    ),
    (
        "tcp4 unequal TTL",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ttl=65),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal ToS",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, tos=1),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal flags more fragments set",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ip_flags=1),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal flags DF set",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ip_flags=2),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp6 unequal hop limit",
        lambda: [
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101, hop_limit=65),
        ],
        [0, 1],
        [160, 160],
    ),
    (
        "tcp6 unequal traffic class",
        lambda: [
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101, traffic_class=1),
        ],
        [0, 1],
        [160, 160],
    ),
]


@pytest.mark.parametrize(
    "make_pkts, want_to_write, want_lens",
    [case[1:] for case in GRO_CASES],
    ids=[case[0] for case in GRO_CASES],
)
def test_handle_gro(make_pkts, want_to_write, want_lens):
    pkts = make_pkts()
    to_write = handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable())
    assert to_write == want_to_write
    assert [len(pkts[i][OFFSET:]) for i in to_write] == want_lens


def test_handle_gro_seed_invariants():
    pkts = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
        tcp4_packet(IP4_A, IP4_C, ACK, 100, 201),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 101),
        tcp6_packet(IP6_A, IP6_C, ACK, 100, 201),
    ]
    to_write = handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable())
    assert len(to_write) <= len(pkts)
    assert len(set(to_write)) == len(to_write)
    assert all(0 <= i < len(pkts) for i in to_write)


@pytest.mark.parametrize("offset", [0, 9])
def test_handle_gro_offset_too_small(offset):
    pkts = [tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)]
    with pytest.raises(ValueError, match="invalid offset"):
        handle_gro(pkts, offset, TCPGROTable(), TCPGROTable())


def test_handle_gro_offset_past_packet():
    with pytest.raises(ValueError, match="invalid offset"):
        handle_gro([bytearray(OFFSET)], OFFSET, TCPGROTable(), TCPGROTable())


def test_handle_gro_writes_virtio_headers():
    pkts = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
        tcp4_packet(IP4_A, IP4_C, ACK, 100, 1),
    ]
    handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable())
    merged = VirtioNetHdr.decode(pkts[0])
    assert merged == VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=VIRTIO_NET_HDR_GSO_TCPV4,
        hdr_len=40,
        gso_size=100,
        csum_start=20,
        csum_offset=16,
    )
    assert VirtioNetHdr.decode(pkts[2]) == VirtioNetHdr()
    ip = pkts[0][OFFSET:]
    assert struct.unpack_from(">H", ip, 2)[0] == 240
    assert checksum(ip[:20]) == 0xFFFF


def test_is_tcp4_no_ip_options():
    valid = tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)[VIRTIO_NET_HDR_LEN:]
    invalid_header_len = bytearray(valid)
    invalid_header_len[0] = 0x46
    invalid_protocol = bytearray(valid)
    invalid_protocol[9] = 7
    assert is_tcp4_no_ip_options(valid) is True
    assert is_tcp4_no_ip_options(valid[:39]) is False
    assert is_tcp4_no_ip_options(bytes([0x00])) is False
    assert is_tcp4_no_ip_options(invalid_header_len) is False
    assert is_tcp4_no_ip_options(invalid_protocol) is False


def test_is_tcp6_no_eh():
    valid = tcp6_packet(IP6_A, IP6_B, ACK, 100, 1)[VIRTIO_NET_HDR_LEN:]
    other_next_header = bytearray(valid)
    other_next_header[6] = 17
    assert is_tcp6_no_eh(valid) is True
    assert is_tcp6_no_eh(valid[:59]) is False
    assert is_tcp6_no_eh(other_next_header) is False
    assert is_tcp6_no_eh(tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)[OFFSET:]) is False


def test_virtio_hdr_round_trip():
    hdr = VirtioNetHdr(1, 4, 60, 1400, 40, 16)
    buf = bytearray(VIRTIO_NET_HDR_LEN + 3)
    hdr.encode(buf)
    assert VIRTIO_NET_HDR_LEN == 10
    assert VirtioNetHdr.decode(buf) == hdr


def test_virtio_hdr_short_buffer():
    with pytest.raises(ValueError):
        VirtioNetHdr.decode(b"\x00" * 9)
    with pytest.raises(ValueError):
        VirtioNetHdr().encode(bytearray(9))


def test_gro_table_lookup_insert_reset():
    table = TCPGROTable()
    pkt = bytes(tcp4_packet(IP4_A, IP4_B, ACK, 100, 7)[OFFSET:])
    assert table.lookup_or_insert(pkt, 12, 16, 20, 20, 3) is None
    items = table.lookup_or_insert(pkt, 12, 16, 20, 20, 3)
    assert len(items) == 1
    item = items[0]
    assert (item.sent_seq, item.bufs_index, item.gso_size, item.iph_len, item.tcph_len) == (7, 3, 100, 20, 20)
    assert item.psh_set is False
    assert item.key.src_addr == _addr("192.0.2.1")
    assert item.key.rx_ack == 1
    table.delete_at(item.key, 0)
    assert table.items_by_flow[item.key] == []
    table.reset()
    assert table.items_by_flow == {}


@pytest.mark.parametrize(
    "builder, src, dst, iph_len, gso_type, v6",
    [
        (tcp4_packet, IP4_A, IP4_B, 20, VIRTIO_NET_HDR_GSO_TCPV4, False),
        (tcp6_packet, IP6_A, IP6_B, 40, VIRTIO_NET_HDR_GSO_TCPV6, True),
    ],
)
def test_gro_then_tso_round_trip(builder, src, dst, iph_len, gso_type, v6):
    pkts = [builder(src, dst, ACK, 100, 1), builder(src, dst, ACK, 100, 101)]
    originals = [bytes(p[OFFSET:]) for p in pkts]
    assert handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable()) == [0]
    hdr = VirtioNetHdr.decode(pkts[0])
    assert hdr.gso_type == gso_type
    out = [bytearray(65535) for _ in range(4)]
    sizes = tcp_tso(bytearray(pkts[0][OFFSET:]), hdr, out, 0)
    expected_len = iph_len + 20 + 100
    assert sizes == [expected_len, expected_len]
    for i, size in enumerate(sizes):
        seg = out[i][:size]
        assert struct.unpack_from(">I", seg, iph_len + 4)[0] == 1 + 100 * i
        assert seg[iph_len + 20 :] == originals[i][iph_len + 20 :]
        assert _tcp_checksum_ok(seg, iph_len, v6)
        if v6:
            assert seg == originals[i]
        else:
            assert checksum(seg[:20]) == 0xFFFF
            assert struct.unpack_from(">H", seg, 4)[0] == i


def test_tso_clears_fin_psh_except_last():
    pkt = bytearray(tcp4_packet(IP4_A, IP4_B, ACK | PSH | 0x01, 250, 10)[OFFSET:])
    hdr = VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16)
    out = [bytearray(2000) for _ in range(3)]
    sizes = tcp_tso(pkt, hdr, out, 5)
    assert sizes == [140, 140, 90]
    assert [out[i][5 + 33] for i in range(3)] == [ACK, ACK, ACK | PSH | 0x01]
    assert [struct.unpack_from(">I", out[i], 5 + 24)[0] for i in range(3)] == [10, 110, 210]


def test_tso_too_many_segments():
    pkt = bytearray(tcp4_packet(IP4_A, IP4_B, ACK, 200, 1)[OFFSET:])
    hdr = VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16)
    with pytest.raises(TooManySegmentsError, match="too many segments"):
        tcp_tso(pkt, hdr, [bytearray(65535)], 0)


def test_gso_none_checksum_completes_partial():
    pkt = bytearray(tcp4_packet(IP4_A, IP4_B, ACK, 50, 1)[OFFSET:])
    expected = bytes(pkt)
    psum = pseudo_header_checksum_no_fold(6, pkt[12:16], pkt[16:20], len(pkt) - 20)
    struct.pack_into(">H", pkt, 36, checksum(b"", psum))
    gso_none_checksum(pkt, 20, 16)
    assert bytes(pkt) == expected