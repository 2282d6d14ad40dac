from __future__ import annotations

"""Interface descriptions of the device kernels.

The kernel programs themselves are opaque: the host only knows each one by
name, source file, ordered argument signature and workgroup shape.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .buffers import DeviceBuffer


TILE_SIZE = 16
ELEMENT_SIZE = 4  # float32


class KernelKind(Enum):
    MATRIX_MULTIPLY = "matrix-multiply"
    MATRIX_VECTOR_MULTIPLY = "matrix-vector-multiply"


class ArgKind(Enum):
    INT = "int"
    BUFFER_IN = "buffer-in"
    BUFFER_OUT = "buffer-out"
    LOCAL = "local"


@dataclass(frozen=True)
class KernelSignature:
    name: str
    source: str
    args: tuple[ArgKind, ...]
    workgroup: tuple[int, ...]

    @property
    def buffer_count(self) -> int:
        return sum(1 for a in self.args if a in (ArgKind.BUFFER_IN, ArgKind.BUFFER_OUT))

    @property
    def int_count(self) -> int:
        return sum(1 for a in self.args if a is ArgKind.INT)

    @property
    def uses_local(self) -> bool:
        return ArgKind.LOCAL in self.args


SIGNATURES: dict[KernelKind, KernelSignature] = {
    KernelKind.MATRIX_MULTIPLY: KernelSignature(
        name="mmul",
        source="matmul_kernel.comp",
        args=(
            ArgKind.INT,  # row stride
            ArgKind.BUFFER_IN,  # A
            ArgKind.BUFFER_IN,  # B
            ArgKind.BUFFER_OUT,  # C
            ArgKind.LOCAL,  # A tile
            ArgKind.LOCAL,  # B tile
        ),
        workgroup=(TILE_SIZE, TILE_SIZE),
    ),
    KernelKind.MATRIX_VECTOR_MULTIPLY: KernelSignature(
        name="matrixVectorMul",
        source="matvec_mul.comp",
        args=(
            ArgKind.BUFFER_OUT,  # result
            ArgKind.BUFFER_IN,  # matrix
            ArgKind.BUFFER_IN,  # vector
            ArgKind.INT,  # row width
        ),
        workgroup=(64,),
    ),
}


@dataclass(frozen=True)
class LocalScratch:
    """Per-workgroup local memory handed to a kernel as an argument."""

    nbytes: int


KernelArg = Union[int, DeviceBuffer, LocalScratch]


@dataclass(frozen=True)
class KernelLaunch:
    kernel: KernelKind
    global_size: tuple[int, ...]
    local_size: Optional[tuple[int, ...]]
    args: tuple[KernelArg, ...]

    @property
    def signature(self) -> KernelSignature:
        return SIGNATURES[self.kernel]

    def ints(self) -> list[int]:
        return [int(a) for a in self.args if isinstance(a, int)]

    def buffers(self) -> list[DeviceBuffer]:
        return [a for a in self.args if isinstance(a, DeviceBuffer)]


def tile_scratch() -> LocalScratch:
    return LocalScratch(TILE_SIZE * TILE_SIZE * ELEMENT_SIZE)


def group_counts(global_size: tuple[int, ...], workgroup: tuple[int, ...]) -> tuple[int, int, int]:
    """Workgroups per axis needed to cover ``global_size`` (padded to 3 axes)."""
    if len(global_size) > len(workgroup):
        raise ValueError(f"{len(global_size)}-D launch on a {len(workgroup)}-D kernel")
    counts = [1, 1, 1]
    for axis, (n, w) in enumerate(zip(global_size, workgroup)):
        counts[axis] = (int(n) + w - 1) // w
    return counts[0], counts[1], counts[2]


def validate_launch(launch: KernelLaunch) -> None:
    """Check a launch against its kernel's signature. Raises ``ValueError``."""

    sig = launch.signature
    if len(launch.args) != len(sig.args):
        raise ValueError(f"{sig.name} takes {len(sig.args)} arguments, got {len(launch.args)}")

    for i, (kind, arg) in enumerate(zip(sig.args, launch.args)):
        where = f"{sig.name} argument {i}"
        if kind is ArgKind.INT:
            if isinstance(arg, bool) or not isinstance(arg, int):
                raise ValueError(f"{where} must be an int, got {type(arg).__name__}")
        elif kind is ArgKind.LOCAL:
            if not isinstance(arg, LocalScratch):
                raise ValueError(f"{where} must be local scratch, got {type(arg).__name__}")
            expected = TILE_SIZE * TILE_SIZE * ELEMENT_SIZE
            if arg.nbytes != expected:
                raise ValueError(f"{where} scratch is {arg.nbytes} bytes, kernel tile needs {expected}")
        else:
            if not isinstance(arg, DeviceBuffer):
                raise ValueError(f"{where} must be a device buffer, got {type(arg).__name__}")
            if kind is ArgKind.BUFFER_IN and not arg.readable:
                raise ValueError(f"{where} is read by the kernel but the buffer is write-only")
            if kind is ArgKind.BUFFER_OUT and not arg.writable:
                raise ValueError(f"{where} is written by the kernel but the buffer is read-only")

    if not launch.global_size or any(int(n) <= 0 for n in launch.global_size):
        raise ValueError(f"{sig.name}: invalid global size {launch.global_size}")
    if len(launch.global_size) > len(sig.workgroup):
        raise ValueError(f"{sig.name}: {len(launch.global_size)}-D launch on a {len(sig.workgroup)}-D kernel")
    if launch.local_size is not None and tuple(launch.local_size) != sig.workgroup:
        raise ValueError(f"{sig.name}: local size {launch.local_size} does not match workgroup {sig.workgroup}")
