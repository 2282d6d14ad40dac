from __future__ import annotations

"""Matrix x matrix and matrix x vector multiply on the compute device.

Each call uploads its inputs into read-only buffers, allocates a write-only
result buffer, enqueues the kernel, does one blocking read-back into a fresh
result matrix and releases the buffers. On failure nothing is returned: the
error is logged and propagated.
"""

import logging
from contextlib import ExitStack
from typing import Optional

from .buffers import AccessMode, create_buffer
from .errors import DeviceOperationFailure, DimensionMismatch, RaspmatError
from .kernels import TILE_SIZE, KernelKind, KernelLaunch, tile_scratch
from .matrix import Matrix
from .session import ComputeSession, default_session


logger = logging.getLogger(__name__)


def _log_failure(op: str, err: RaspmatError) -> None:
    if isinstance(err, DeviceOperationFailure):
        logger.error("ERROR: %s: %s (%s)", op, err.operation, err.code)
    else:
        logger.error("ERROR: %s: %s", op, err)


def matmul(a: Matrix, b: Matrix, session: Optional[ComputeSession] = None) -> Matrix:
    """``a @ b`` using the tiled ``mmul`` kernel.

    ``a.width`` (the row stride) must equal ``b.height``. The result is
    ``Matrix(b.width, a.height)`` and the launch covers it one work-item per
    element in 16x16 tiles.
    """

    if a.width != b.height:
        raise DimensionMismatch(
            f"matmul: a is {a.width}x{a.height}, b is {b.width}x{b.height}; "
            f"a.width must equal b.height",
            expected=a.width,
            actual=b.height,
        )
    if session is None:
        session = default_session()

    try:
        program = session.program(KernelKind.MATRIX_MULTIPLY)
        queue = session.queue
        device = session.device
    except RaspmatError as e:
        _log_failure("matmul", e)
        raise

    result = Matrix.zeros(b.width, a.height)
    try:
        with ExitStack() as stack:
            buf_a = stack.enter_context(create_buffer(device, a, AccessMode.READ_ONLY))
            buf_b = stack.enter_context(create_buffer(device, b, AccessMode.READ_ONLY))
            buf_c = stack.enter_context(create_buffer(device, result, AccessMode.WRITE_ONLY))

            launch = KernelLaunch(
                kernel=KernelKind.MATRIX_MULTIPLY,
                global_size=(result.width, result.height),
                local_size=(TILE_SIZE, TILE_SIZE),
                args=(a.width, buf_a, buf_b, buf_c, tile_scratch(), tile_scratch()),
            )
            queue.enqueue_kernel(program, launch)
            queue.enqueue_read(buf_c, result)
    except BaseException as e:
        result.close()
        if isinstance(e, RaspmatError):
            _log_failure("matmul", e)
        raise
    return result


def matvec(m: Matrix, v: Matrix, session: Optional[ComputeSession] = None) -> Matrix:
    """``m @ v`` with one work-item per output row.

    ``v`` is a row vector (height 1) of length ``m.width``; the result is a
    vector of length ``m.height``.
    """

    if not v.is_vector:
        raise DimensionMismatch(
            f"matvec: v must be a vector (height 1), got {v.width}x{v.height}",
            expected=1,
            actual=v.height,
        )
    if v.width != m.width:
        raise DimensionMismatch(
            f"matvec: m is {m.width}x{m.height}, v has {v.width} elements; they must agree",
            expected=m.width,
            actual=v.width,
        )
    if session is None:
        session = default_session()

    try:
        program = session.program(KernelKind.MATRIX_VECTOR_MULTIPLY)
        queue = session.queue
        device = session.device
    except RaspmatError as e:
        _log_failure("matvec", e)
        raise

    result = Matrix.zeros(m.height, 1)
    try:
        with ExitStack() as stack:
            buf_m = stack.enter_context(create_buffer(device, m, AccessMode.READ_ONLY))
            buf_v = stack.enter_context(create_buffer(device, v, AccessMode.READ_ONLY))
            buf_r = stack.enter_context(create_buffer(device, result, AccessMode.WRITE_ONLY))

            launch = KernelLaunch(
                kernel=KernelKind.MATRIX_VECTOR_MULTIPLY,
                global_size=(m.height,),
                local_size=None,
                args=(buf_r, buf_m, buf_v, m.width),
            )
            queue.enqueue_kernel(program, launch)
            queue.enqueue_read(buf_r, result)
    except BaseException as e:
        result.close()
        if isinstance(e, RaspmatError):
            _log_failure("matvec", e)
        raise

    if session.config.echo_results:
        result.print()
    return result


def multiply(a: Matrix, b: Matrix, session: Optional[ComputeSession] = None) -> Matrix:
    """Matrix-vector product when ``b`` is a vector, matrix product otherwise."""

    if b.is_vector:
        return matvec(a, b, session)
    return matmul(a, b, session)
