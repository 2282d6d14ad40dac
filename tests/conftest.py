"""
pytest configuration and shared fixtures.

``HostDevice`` is a NumPy stand-in for the compute device. It implements the
same protocol as the Vulkan device, keeps an ordered event log, defers kernel
execution until something waits on the queue and can be told to fail.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import pytest

from raspmat import session as session_mod
from raspmat.buffers import DeviceBuffer
from raspmat.errors import BuildFailure, DeviceOperationFailure
from raspmat.kernels import KernelLaunch, KernelSignature, group_counts
from raspmat.session import ComputeSession


@dataclass(eq=False)
class HostAllocation:
    data: bytearray
    freed: bool = False


@dataclass
class HostDevice:
    name: str = "host-test-device"
    fail_build: Optional[str] = None
    fail_on: dict = field(default_factory=dict)
    events: list = field(default_factory=list)
    launches: list = field(default_factory=list)
    allocations: list = field(default_factory=list)
    built: list = field(default_factory=list)
    closed: bool = False
    _pending: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise DeviceOperationFailure(op, self.fail_on[op])

    def build_program(self, signature: KernelSignature, source: Path) -> KernelSignature:
        if not Path(source).exists():
            raise BuildFailure(signature.source, f"missing kernel source: {source}", self.name)
        if self.fail_build == signature.name:
            raise BuildFailure(signature.source, f"{signature.source}:7: error: 'acc' : undeclared identifier", self.name)
        self.built.append(signature.name)
        return signature

    def allocate(self, nbytes: int) -> HostAllocation:
        self._maybe_fail("allocate")
        # 0xFF bytes read back as NaN: "undefined" device contents.
        alloc = HostAllocation(bytearray(b"\xff" * nbytes))
        self.allocations.append(alloc)
        self.events.append(("allocate", nbytes))
        return alloc

    def upload(self, allocation: HostAllocation, data: np.ndarray) -> None:
        self._maybe_fail("upload")
        raw = np.ascontiguousarray(data, dtype=np.float32).tobytes()
        allocation.data[: len(raw)] = raw
        self.events.append(("upload", len(raw)))

    def download(self, allocation: HostAllocation, nbytes: int) -> bytes:
        self.wait_idle()
        self._maybe_fail("download")
        self.events.append(("download", nbytes))
        return bytes(allocation.data[:nbytes])

    def free(self, allocation: HostAllocation) -> None:
        assert not allocation.freed, "allocation freed twice"
        # Like the Vulkan device: in-flight work may still use the buffer.
        self.wait_idle()
        allocation.freed = True
        self.events.append(("free", len(allocation.data)))

    def dispatch(self, program: KernelSignature, launch: KernelLaunch) -> None:
        self._maybe_fail("dispatch")
        with self._lock:
            self._drain()
            self.launches.append(launch)
            self.events.append(("dispatch", program.name))
            self._pending.append((program, launch))

    def wait_idle(self) -> None:
        with self._lock:
            self._drain()

    def _drain(self) -> None:
        while self._pending:
            program, launch = self._pending.pop(0)
            self._run(program, launch)

    def close(self) -> None:
        self.closed = True

    # Reference semantics of the two kernels.
    def _run(self, program: KernelSignature, launch: KernelLaunch) -> None:
        bufs = launch.buffers()
        assert not any(b.allocation.freed for b in bufs), "kernel ran on a freed buffer"
        ints = launch.ints()
        gx, gy, _ = group_counts(launch.global_size, program.workgroup)
        if program.name == "mmul":
            k = ints[0]
            a = _floats(bufs[0])
            b = _floats(bufs[1])
            m, n = a.size // k, b.size // k
            c = a.reshape(m, k) @ b.reshape(k, n)
            out = _floats(bufs[2]).reshape(m, n)
            rows = min(m, gy * program.workgroup[1])
            cols = min(n, gx * program.workgroup[0])
            out[:rows, :cols] = c[:rows, :cols]
            _store(bufs[2], out)
        elif program.name == "matrixVectorMul":
            width = ints[0]
            res = _floats(bufs[0])
            mat = _floats(bufs[1]).reshape(-1, width)
            vec = _floats(bufs[2])
            rows = min(res.size, gx * program.workgroup[0])
            res[:rows] = mat[:rows] @ vec[:width]
            _store(bufs[0], res)
        else:  # pragma: no cover
            raise AssertionError(program.name)


def _floats(buf: DeviceBuffer) -> np.ndarray:
    return np.frombuffer(bytes(buf.allocation.data[: buf.nbytes]), dtype=np.float32).copy()


def _store(buf: DeviceBuffer, arr: np.ndarray) -> None:
    raw = np.ascontiguousarray(arr, dtype=np.float32).tobytes()
    buf.allocation.data[: len(raw)] = raw


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture
def device():
    return HostDevice()


@pytest.fixture
def session(device):
    s = ComputeSession(device_factory=lambda config: device)
    yield s
    s.close()


@pytest.fixture(autouse=True)
def _no_default_session():
    yield
    session_mod.set_default_session(None)
