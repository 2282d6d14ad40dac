from __future__ import annotations

"""Compute session: one device, two compiled programs, one in-order queue.

A session is built lazily on first use. Construction happens exactly once
even when several threads race to use a fresh session. If construction fails
(typically a kernel that does not compile) the session is poisoned: every
later use re-raises the same error without trying again.
"""

import logging
import threading
from typing import Any, Callable, Optional

from .buffers import DeviceBuffer, read_into
from .config import SessionConfig
from .device import Device
from .errors import BuildFailure, DeviceOperationFailure, RaspmatError
from .kernels import SIGNATURES, KernelKind, KernelLaunch, validate_launch
from .matrix import Matrix


logger = logging.getLogger(__name__)

DeviceFactory = Callable[[SessionConfig], Device]


def _vulkan_device(config: SessionConfig) -> Device:
    from .vulkan_backend import VulkanDevice

    return VulkanDevice(config)


class CommandQueue:
    """The session's single in-order queue.

    Submissions from different threads are serialized by a lock, so work runs
    in the order it was enqueued.
    """

    def __init__(self, device: Device) -> None:
        self.device = device
        self._lock = threading.Lock()

    def enqueue_kernel(self, program: Any, launch: KernelLaunch) -> None:
        validate_launch(launch)
        with self._lock:
            self.device.dispatch(program, launch)

    def enqueue_read(self, buffer: DeviceBuffer, matrix: Matrix) -> None:
        """Blocking read-back of exactly ``matrix.size`` elements."""
        with self._lock:
            read_into(buffer, matrix)

    def finish(self) -> None:
        with self._lock:
            self.device.wait_idle()


class ComputeSession:
    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        device_factory: Optional[DeviceFactory] = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._device_factory: DeviceFactory = device_factory or _vulkan_device
        self._lock = threading.Lock()

        self._device: Optional[Device] = None
        self._queue: Optional[CommandQueue] = None
        self._programs: dict[KernelKind, Any] = {}
        self._failure: Optional[RaspmatError] = None
        self._built = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def built(self) -> bool:
        return self._built

    @property
    def failure(self) -> Optional[RaspmatError]:
        return self._failure

    def ensure_built(self) -> "ComputeSession":
        if self._built:
            return self
        with self._lock:
            if self._failure is not None:
                raise self._failure
            if self._closed:
                raise RaspmatError("compute session is closed")
            if not self._built:
                self._build()
        return self

    def _build(self) -> None:
        device: Optional[Device] = None
        try:
            device = self._device_factory(self.config)
            programs = {}
            for kind, sig in SIGNATURES.items():
                programs[kind] = device.build_program(sig, self.config.kernel_path(sig.source))
        except BuildFailure as e:
            logger.error("%s", e.log)
            logger.error("Kernel build failed for %s; compute session is unusable", e.device or "device")
            self._poison(e, device)
            raise
        except RaspmatError as e:
            logger.error("Compute session construction failed: %s", e)
            self._poison(e, device)
            raise
        except Exception as e:
            failure = DeviceOperationFailure("construct compute session", None, f"{type(e).__name__}: {e}")
            logger.error("Compute session construction failed: %s", failure)
            self._poison(failure, device)
            raise failure from e
        except BaseException:
            # Interrupted: nothing to poison, but the device must not leak.
            if device is not None:
                device.close()
            raise

        self._device = device
        self._programs = programs
        self._queue = CommandQueue(device)
        self._built = True

    def _poison(self, error: RaspmatError, device: Optional[Device]) -> None:
        self._failure = error
        if device is not None:
            device.close()

    def close(self) -> None:
        with self._lock:
            if self._device is not None:
                self._device.close()
            self._device = None
            self._queue = None
            self._programs = {}
            self._built = False
            self._closed = True

    def __enter__(self) -> "ComputeSession":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    @property
    def device(self) -> Device:
        self.ensure_built()
        assert self._device is not None
        return self._device

    @property
    def queue(self) -> CommandQueue:
        self.ensure_built()
        assert self._queue is not None
        return self._queue

    def program(self, kind: KernelKind) -> Any:
        self.ensure_built()
        return self._programs[kind]


_DEFAULT: Optional[ComputeSession] = None
_DEFAULT_LOCK = threading.Lock()


def default_session() -> ComputeSession:
    """The process-wide session, created on first call."""

    global _DEFAULT
    with _DEFAULT_LOCK:
        if _DEFAULT is None:
            _DEFAULT = ComputeSession()
        return _DEFAULT


def set_default_session(session: Optional[ComputeSession]) -> None:
    global _DEFAULT
    with _DEFAULT_LOCK:
        _DEFAULT = session


def reset_default_session() -> None:
    global _DEFAULT
    with _DEFAULT_LOCK:
        session, _DEFAULT = _DEFAULT, None
    if session is not None:
        session.close()
