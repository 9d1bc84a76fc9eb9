"""The interface every TUN device implements, with its events and errors."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterable, Optional, Sequence


class Event(enum.IntFlag):
    """Events a device reports about its interface."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """Segmentation produced more packets than the supplied buffers hold.

    Raised by reads; it should not cause reading to stop.
    """

    def __init__(self, message: str = "too many segments") -> None:
        super().__init__(message)


class Device(ABC):
    """A TUN device that reads and writes batches of IP packets."""

    @abstractmethod
    def file(self) -> Optional[BinaryIO]:
        """Return the file object backing the device, if any."""

    @abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read one or more packets into ``bufs`` starting at ``offset``.

        Returns the size of each packet read, in buffer order.
        """

    @abstractmethod
    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Write the packets in ``bufs``, each starting at ``offset``.

        Returns the number of packets written.
        """

    @abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abstractmethod
    def name(self) -> str:
        """Return the current name of the device."""

    @abstractmethod
    def events(self) -> Iterable[Event]:
        """Return the stream of events the device produces."""

    @abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abstractmethod
    def batch_size(self) -> int:
        """Return the preferred maximum number of packets per read or write."""

    def __enter__(self) -> "Device":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()