"""TUN device interface, an in-memory device, and TCP receive/segmentation offload helpers."""

__version__ = "0.1.0"
__all__ = ["channel", "checksum", "device", "offload", "virtio"]