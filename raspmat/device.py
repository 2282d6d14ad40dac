from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import numpy as np

from .kernels import KernelLaunch, KernelSignature


class Device(Protocol):
    """What the session needs from a compute device.

    Work submitted through ``dispatch`` runs in submission order. ``download``
    is blocking: it waits for everything submitted so far before reading.
    """

    name: str

    def build_program(self, signature: KernelSignature, source: Path) -> Any: ...

    def allocate(self, nbytes: int) -> Any: ...

    def upload(self, allocation: Any, data: np.ndarray) -> None: ...

    def download(self, allocation: Any, nbytes: int) -> bytes: ...

    def free(self, allocation: Any) -> None: ...

    def dispatch(self, program: Any, launch: KernelLaunch) -> None: ...

    def wait_idle(self) -> None: ...

    def close(self) -> None: ...
