from __future__ import annotations

"""Host matrix -> device buffer marshalling.

A buffer is created right before a launch and released after read-back; it
never outlives a single multiply call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from .device import Device
    from .matrix import Matrix


class AccessMode(Enum):
    """How the kernel uses a buffer.

    Readable modes copy the matrix contents in at creation. ``WRITE_ONLY``
    transfers nothing; its contents are undefined until a kernel writes them.
    """

    READ_ONLY = "read-only"
    READ_WRITE = "read-write"
    WRITE_ONLY = "write-only"

    @property
    def copies_host(self) -> bool:
        return self is not AccessMode.WRITE_ONLY


@dataclass(eq=False)
class DeviceBuffer:
    """A region of device memory mirroring (or backing) a matrix."""

    device: "Device"
    allocation: Any
    nbytes: int
    mode: AccessMode
    _released: bool = field(default=False, repr=False)

    @property
    def readable(self) -> bool:
        return self.mode is not AccessMode.WRITE_ONLY

    @property
    def writable(self) -> bool:
        return self.mode is not AccessMode.READ_ONLY

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.device.free(self.allocation)

    def __enter__(self) -> "DeviceBuffer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def create_buffer(device: "Device", matrix: "Matrix", mode: AccessMode) -> DeviceBuffer:
    """Allocate ``matrix.size`` float32 elements on ``device``.

    For readable modes the matrix's current host contents are uploaded as part
    of creation; if the upload fails the allocation is freed before the error
    propagates.
    """

    data = matrix.get()
    nbytes = int(data.nbytes)
    allocation = device.allocate(nbytes)
    buf = DeviceBuffer(device=device, allocation=allocation, nbytes=nbytes, mode=mode)
    if mode.copies_host:
        try:
            device.upload(allocation, data)
        except BaseException:
            buf.release()
            raise
    return buf


def read_into(buffer: DeviceBuffer, matrix: "Matrix") -> None:
    """Blocking read of exactly ``matrix.size`` elements into its storage."""

    dst = matrix.get()
    nbytes = int(dst.nbytes)
    if nbytes > buffer.nbytes:
        raise ValueError(f"read of {nbytes} bytes from a {buffer.nbytes}-byte buffer")
    raw = buffer.device.download(buffer.allocation, nbytes)
    dst[...] = np.frombuffer(raw, dtype=np.float32, count=matrix.size)
