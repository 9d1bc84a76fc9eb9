"""An in-memory TUN device backed by queues, and a helper that builds ICMP pings."""

from __future__ import annotations

import errno
import ipaddress
import queue
import struct
import threading
from typing import Iterator, Optional, Sequence, Union

from .checksum import checksum
from .device import Device, Event

DEFAULT_MTU = 1420

_CLOSED = object()

_Address = Union[str, ipaddress.IPv4Address]


def _inet_checksum(buf: bytes, initial: int) -> int:
    """The complemented RFC 1071 checksum of ``buf`` seeded with ``initial``."""
    return ~checksum(buf, initial) & 0xFFFF


def _gen_icmpv4(payload: bytes, dst: _Address, src: _Address) -> bytes:
    ipv4_size = 20
    icmpv4_size = 8
    header_size = ipv4_size + icmpv4_size
    pkt = bytearray(header_size + len(payload))

    icmp = bytearray(icmpv4_size)
    icmp[0] = 8  # echo request
    icmp[1] = 0
    struct.pack_into(">H", icmp, 2, ~_inet_checksum(icmp, _inet_checksum(payload, 0)) & 0xFFFF)
    pkt[ipv4_size:header_size] = icmp

    ip = bytearray(ipv4_size)
    ip[0] = (4 << 4) | (ipv4_size // 4)
    struct.pack_into(">H", ip, 2, len(pkt))
    ip[8] = 65  # TTL
    ip[9] = 1  # ICMP
    ip[12:16] = ipaddress.IPv4Address(src).packed
    ip[16:20] = ipaddress.IPv4Address(dst).packed
    struct.pack_into(">H", ip, 10, ~_inet_checksum(ip, 0) & 0xFFFF)
    pkt[:ipv4_size] = ip

    pkt[header_size:] = payload
    return bytes(pkt)


def ping(dst: _Address, src: _Address) -> bytes:
    """Build an IPv4 ICMP echo request from ``src`` to ``dst``."""
    payload = struct.pack(">HH", 1337, 0)
    return _gen_icmpv4(payload, dst, src)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class ChannelTUN(Device):
    """A loopback device exchanging packets through two queues.

    Packets put on :attr:`outbound` are returned by :meth:`read`; packets
    passed to :meth:`write` appear on :attr:`inbound`.
    """

    def __init__(self) -> None:
        self.inbound: "queue.Queue[bytes]" = queue.Queue()
        self.outbound: "queue.Queue[object]" = queue.Queue()
        self._events: "queue.Queue[Optional[Event]]" = queue.Queue()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._events.put(Event.UP)

    def file(self) -> None:
        return None

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Wait for one outbound packet and copy it into ``bufs[0]`` at ``offset``."""
        if self._closed.is_set():
            raise _closed_error()
        msg = self.outbound.get()
        if msg is _CLOSED:
            self.outbound.put(_CLOSED)
            raise _closed_error()
        data = bytes(msg)  # type: ignore[call-overload]
        buf = bufs[0]
        n = max(min(len(data), len(buf) - offset), 0)
        buf[offset : offset + n] = data[:n]
        return [n]

    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Deliver each packet, from ``offset`` on, to :attr:`inbound`."""
        for data in bufs:
            if self._closed.is_set():
                raise _closed_error()
            self.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        """Yield device events until the device is closed."""
        while True:
            event = self._events.get()
            if event is None:
                self._events.put(None)
                return
            yield event

    def close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self.outbound.put(_CLOSED)
            self._events.put(None)

    def batch_size(self) -> int:
        return 1