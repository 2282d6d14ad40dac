import numpy as np
import pytest

from raspmat import AccessMode, DeviceOperationFailure, Matrix, create_buffer
from raspmat.buffers import read_into


def test_read_only_buffer_is_byte_exact_copy(device) -> None:
    m = Matrix.from_array([[1.5, -2.0, 3.25], [4.0, 5.0, 6.0]])
    buf = create_buffer(device, m, AccessMode.READ_ONLY)
    try:
        assert buf.nbytes == m.size * 4
        assert bytes(buf.allocation.data) == m.get().tobytes()
        assert buf.readable and not buf.writable
        assert device.events == [("allocate", 24), ("upload", 24)]
    finally:
        buf.release()


def test_read_write_buffer_copies_host_contents(device) -> None:
    m = Matrix.random(4, 4, seed=3)
    with create_buffer(device, m, AccessMode.READ_WRITE) as buf:
        assert buf.readable and buf.writable
        assert bytes(buf.allocation.data) == m.get().tobytes()


def test_write_only_buffer_transfers_nothing(device) -> None:
    m = Matrix.random(3, 3)
    with create_buffer(device, m, AccessMode.WRITE_ONLY) as buf:
        assert buf.writable and not buf.readable
        assert device.events == [("allocate", 36)]
        assert bytes(buf.allocation.data) != m.get().tobytes()


def test_later_host_mutation_does_not_reach_device(device) -> None:
    m = Matrix.zeros(2, 2)
    with create_buffer(device, m, AccessMode.READ_ONLY) as buf:
        m[0, 0] = 42.0
        assert np.frombuffer(bytes(buf.allocation.data), dtype=np.float32)[0] == 0.0


def test_release_happens_exactly_once(device) -> None:
    buf = create_buffer(device, Matrix.zeros(2, 2), AccessMode.READ_ONLY)
    buf.release()
    buf.release()
    with buf:
        pass
    assert buf.released
    assert [e for e in device.events if e[0] == "free"] == [("free", 16)]


def test_allocation_failure_is_structured(device) -> None:
    device.fail_on["allocate"] = -2
    with pytest.raises(DeviceOperationFailure) as info:
        create_buffer(device, Matrix.zeros(2, 2), AccessMode.READ_ONLY)
    assert info.value.operation == "allocate"
    assert info.value.code == -2


def test_upload_failure_frees_allocation(device) -> None:
    device.fail_on["upload"] = -1
    with pytest.raises(DeviceOperationFailure):
        create_buffer(device, Matrix.zeros(2, 2), AccessMode.READ_ONLY)
    assert len(device.allocations) == 1
    assert device.allocations[0].freed


def test_read_into_reads_exactly_matrix_size(device) -> None:
    src = Matrix.from_array([[1, 2, 3, 4]])
    dst = Matrix.zeros(2, 1)
    with create_buffer(device, src, AccessMode.READ_ONLY) as buf:
        read_into(buf, dst)
    np.testing.assert_array_equal(dst.numpy(), [[1, 2]])
    assert ("download", 8) in device.events


def test_read_into_larger_than_buffer_rejected(device) -> None:
    with create_buffer(device, Matrix.zeros(2, 1), AccessMode.READ_ONLY) as buf:
        with pytest.raises(ValueError):
            read_into(buf, Matrix.zeros(3, 1))
