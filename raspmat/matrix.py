from __future__ import annotations

"""Fixed-size, move-only float32 matrix with host-side storage."""

import sys
from typing import Any, Optional, TextIO

import numpy as np

from .errors import DimensionMismatch, InertMatrixError


ArrayLike = Any

_FILLS = ("zeros", "random", "empty")


def _check_dim(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")
    return int(value)


class Matrix:
    """A ``width`` x ``height`` grid of float32 values stored row-major.

    Exactly one live ``Matrix`` owns a storage block. Copying is refused;
    ``move()`` hands the storage to a new instance and leaves this one inert.
    Dimensions never change after construction.
    """

    __slots__ = ("_width", "_height", "_data")

    def __init__(
        self,
        width: int,
        height: int,
        fill: str = "zeros",
        *,
        seed: Optional[int] = None,
        _data: Optional[np.ndarray] = None,
    ) -> None:
        self._width = _check_dim("width", width)
        self._height = _check_dim("height", height)
        size = self._width * self._height

        if _data is not None:
            if _data.dtype != np.float32 or _data.ndim != 1 or _data.size != size:
                raise ValueError("storage must be a flat float32 array of width*height elements")
            self._data: Optional[np.ndarray] = _data
            return

        if fill == "zeros":
            self._data = np.zeros(size, dtype=np.float32)
        elif fill == "random":
            # Fresh generator per call: no state is shared between matrices.
            rng = np.random.default_rng(seed)
            self._data = rng.random(size, dtype=np.float32)
        elif fill == "empty":
            self._data = np.empty(size, dtype=np.float32)
        else:
            raise ValueError(f"fill must be one of {_FILLS}, got {fill!r}")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def zeros(cls, width: int, height: int) -> "Matrix":
        return cls(width, height, "zeros")

    @classmethod
    def random(cls, width: int, height: int, *, seed: Optional[int] = None) -> "Matrix":
        """Uniform samples from [0.0, 1.0)."""
        return cls(width, height, "random", seed=seed)

    @classmethod
    def empty(cls, width: int, height: int) -> "Matrix":
        """Uninitialized storage."""
        return cls(width, height, "empty")

    @classmethod
    def from_array(cls, data: ArrayLike) -> "Matrix":
        """Copy a 2-D array of shape ``(height, width)`` (1-D becomes a row vector)."""
        arr = np.array(data, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2:
            raise ValueError(f"expected a 1-D or 2-D array, got shape {arr.shape}")
        height, width = arr.shape
        return cls(width, height, _data=np.ascontiguousarray(arr).reshape(-1))

    @classmethod
    def identity(cls, n: int) -> "Matrix":
        m = cls(n, n, "zeros")
        m.numpy_view()[np.arange(n), np.arange(n)] = 1.0
        return m

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------
    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def size(self) -> int:
        return self._width * self._height

    @property
    def shape(self) -> tuple[int, int]:
        """NumPy-style ``(rows, cols)``."""
        return (self._height, self._width)

    @property
    def nbytes(self) -> int:
        return self.size * np.dtype(np.float32).itemsize

    @property
    def is_vector(self) -> bool:
        return self._height == 1

    @property
    def valid(self) -> bool:
        return self._data is not None

    # ------------------------------------------------------------------
    # Storage access
    # ------------------------------------------------------------------
    def _storage(self) -> np.ndarray:
        if self._data is None:
            raise InertMatrixError("matrix storage was moved or released")
        return self._data

    def get(self) -> np.ndarray:
        """Mutable flat view over the raw storage."""
        return self._storage()

    def numpy_view(self) -> np.ndarray:
        """Mutable ``(height, width)`` view over the raw storage."""
        return self._storage().reshape(self._height, self._width)

    def numpy(self) -> np.ndarray:
        """Copy of the contents as a ``(height, width)`` array."""
        return self.numpy_view().copy()

    def __getitem__(self, index: tuple[int, int]) -> float:
        row, col = index
        return float(self.numpy_view()[row, col])

    def __setitem__(self, index: tuple[int, int], value: float) -> None:
        row, col = index
        self.numpy_view()[row, col] = value

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------
    def move(self) -> "Matrix":
        """Transfer the storage to a new matrix; ``self`` becomes inert."""
        data = self._storage()
        self._data = None
        return Matrix(self._width, self._height, _data=data)

    def take(self, other: "Matrix") -> "Matrix":
        """Move-assign: take ``other``'s storage, leaving ``other`` inert."""
        if other is self:
            return self
        if other.shape != self.shape:
            raise DimensionMismatch(
                f"cannot move a {other._width}x{other._height} matrix into a "
                f"{self._width}x{self._height} one",
                expected=self.shape,
                actual=other.shape,
            )
        self._data = other._storage()
        other._data = None
        return self

    def close(self) -> None:
        """Release the storage. Safe to call more than once."""
        self._data = None

    def __enter__(self) -> "Matrix":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __copy__(self) -> "Matrix":
        raise TypeError("Matrix cannot be copied; use move()")

    def __deepcopy__(self, memo: dict) -> "Matrix":
        raise TypeError("Matrix cannot be copied; use move()")

    def __reduce__(self) -> Any:
        raise TypeError("Matrix cannot be pickled")

    # ------------------------------------------------------------------
    # Printing
    # ------------------------------------------------------------------
    def format(self) -> str:
        data = self._storage()
        rows = []
        for r in range(self._height):
            row = data[r * self._width : (r + 1) * self._width]
            rows.append(" ".join(f"{float(v):g}" for v in row))
        return "\n".join(rows)

    def print(self, file: Optional[TextIO] = None) -> None:
        out = sys.stdout if file is None else file
        out.write(self.format() + "\n")

    def __repr__(self) -> str:  # pragma: no cover - cosmetic
        state = "" if self.valid else ", inert"
        return f"Matrix(width={self._width}, height={self._height}{state})"


def zeromat(width: int, height: int) -> Matrix:
    return Matrix.zeros(width, height)


def randmat(width: int, height: int) -> Matrix:
    return Matrix.random(width, height)


def zerovec(dim: int) -> Matrix:
    return Matrix.zeros(dim, 1)


def randvec(dim: int) -> Matrix:
    return Matrix.random(dim, 1)
