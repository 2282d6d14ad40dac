"""Exception hierarchy for raspmat.

Everything raised on purpose by the package derives from ``RaspmatError`` so
callers can catch the whole family. Device-layer exceptions carry what was
being attempted and the device's result code as attributes.
"""

from __future__ import annotations

from typing import Optional


class RaspmatError(Exception):
    """Base class for all raspmat errors."""


class BuildFailure(RaspmatError):
    """A kernel program failed to build.

    Attributes:
        program: kernel name or source file that failed.
        log: the compiler's build log text.
        device: name of the device the program was built for, if known.
    """

    def __init__(self, program: str, log: str, device: Optional[str] = None) -> None:
        where = f" for {device}" if device else ""
        super().__init__(f"failed to build kernel program {program!r}{where}")
        self.program = program
        self.log = log
        self.device = device


class DeviceOperationFailure(RaspmatError):
    """A device call (allocation, upload, dispatch, read-back, ...) failed.

    Attributes:
        operation: what was being attempted, e.g. ``"vkAllocateMemory"``.
        code: the device result code, or ``None`` when there is none.
    """

    def __init__(self, operation: str, code: Optional[int] = None, detail: str = "") -> None:
        msg = f"{operation} failed"
        if code is not None:
            msg += f" ({code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.operation = operation
        self.code = code


class DimensionMismatch(RaspmatError, ValueError):
    """Operand dimensions do not agree."""

    def __init__(self, message: str, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InertMatrixError(RaspmatError):
    """A moved-from or released matrix was used."""
