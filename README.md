# tunoffload

Pure-Python building blocks for TUN-style packet devices that frame their
packets with a virtio-net header and use TCP segmentation offload.

## Modules

- `tunoffload.checksum`: the Internet checksum. `checksum_no_fold(data, initial)`
  returns the unfolded sum, `checksum(data, initial)` the folded 16-bit sum, and
  `pseudo_header_checksum_no_fold(protocol, src_addr, dst_addr, total_len)` the
  unfolded sum of a TCP/UDP pseudo header.
- `tunoffload.device`: the abstract `Device` class (`file`, `read`, `write`,
  `mtu`, `name`, `events`, `close`, `batch_size`; usable as a context manager
  that closes the device), the `Event` flags `UP`, `DOWN` and `MTU_UPDATE`, and
  `TooManySegmentsError`.
- `tunoffload.offload`: `VirtioNetHdr` (`decode` / `encode`, header length in
  `VIRTIO_NET_HDR_LEN`), TCP receive coalescing with `handle_gro` and
  `TCPGROTable`, TCP segmentation with `tcp_tso`, partial-checksum completion
  with `gso_none_checksum`, and the packet checks `is_tcp4_no_ip_options` and
  `is_tcp6_no_eh`.
- `tunoffload.virtio`: `handle_virtio_read`, which takes one buffer read from a
  vnet-header TUN device and splits it into individual IP packets.
- `tunoffload.channel`: `ChannelTUN`, an in-memory `Device` backed by queues,
  and `ping`, which builds an IPv4 ICMP echo request.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Coalesce a batch of TCP segments before writing them. Every buffer is a
`bytearray` with room in front of the packet for the virtio-net header;
`handle_gro` writes that header, may swap and extend buffers, and returns the
indices still to be written:

```python
from tunoffload.offload import VIRTIO_NET_HDR_LEN, TCPGROTable, handle_gro

offset = VIRTIO_NET_HDR_LEN
to_write = handle_gro(bufs, offset, TCPGROTable(), TCPGROTable())
for index in to_write:
    device_file.write(bufs[index][offset - VIRTIO_NET_HDR_LEN:])
```

Split a segmented read back into packets. The return value lists the size of
each packet placed into `bufs`; malformed input raises `ValueError`, and too few
buffers raise `TooManySegmentsError`:

```python
from tunoffload.virtio import handle_virtio_read

bufs = [bytearray(65535) for _ in range(128)]
sizes = handle_virtio_read(raw, bufs, offset)
for buf, size in zip(bufs, sizes):
    process(buf[offset:offset + size])
```

Use the in-memory device. Packets put on `outbound` come back from `read`;
packets passed to `write` appear on `inbound`:

```python
from tunoffload.channel import ChannelTUN, ping

with ChannelTUN() as tun:
    tun.outbound.put(ping("192.0.2.2", "192.0.2.1"))
    buf = bytearray(1500)
    sizes = tun.read([buf], 0)
    tun.write([buf[:sizes[0]]], 0)
    echoed = tun.inbound.get()
```

## What it does not do

The package does not open, create or configure operating-system TUN
interfaces: there is no device that talks to the kernel, no interface
monitoring and no MTU setting. `Device` is an interface to build such a device
on, and `ChannelTUN` is the only implementation included. There is no
command-line program.