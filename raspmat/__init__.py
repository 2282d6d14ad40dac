from importlib.metadata import PackageNotFoundError, version

from .matrix import Matrix, randmat, randvec, zeromat, zerovec
from .errors import (
	BuildFailure,
	DeviceOperationFailure,
	DimensionMismatch,
	InertMatrixError,
	RaspmatError,
)
from .buffers import AccessMode, DeviceBuffer, create_buffer
from .config import SessionConfig
from .kernels import TILE_SIZE, KernelKind
from .session import ComputeSession, default_session, reset_default_session
from .ops import matmul, matvec, multiply

try:
	__version__ = version("raspmat")
except PackageNotFoundError:  # pragma: no cover
	__version__ = "0.1.0"

__all__ = [
	"Matrix",
	"randmat",
	"randvec",
	"zeromat",
	"zerovec",
	"RaspmatError",
	"BuildFailure",
	"DeviceOperationFailure",
	"DimensionMismatch",
	"InertMatrixError",
	"AccessMode",
	"DeviceBuffer",
	"create_buffer",
	"SessionConfig",
	"TILE_SIZE",
	"KernelKind",
	"ComputeSession",
	"default_session",
	"reset_default_session",
	"matmul",
	"matvec",
	"multiply",
	"__version__",
]
