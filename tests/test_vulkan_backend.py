import ctypes
import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from raspmat import DeviceOperationFailure
from raspmat import vulkan_backend as vb
from raspmat.buffers import AccessMode, DeviceBuffer
from raspmat.config import SessionConfig
from raspmat.kernels import SIGNATURES, KernelKind, KernelLaunch


class _Handle:
    """Opaque stand-in for any Vulkan struct, handle or constant."""

    def __init__(self, name):
        self.name = name

    def __call__(self, *args, **kwargs):
        return _Handle(self.name)

    def __getattr__(self, attr):
        if attr.startswith("__"):
            raise AttributeError(attr)
        return _Handle(f"{self.name}.{attr}")

    def __getitem__(self, index):
        return self


class FakeVulkan:
    """Just enough of the python-vulkan surface to drive ``VulkanDevice``.

    Every call is recorded. Fence calls linger briefly and count how often
    two threads were inside them at once.
    """

    VK_TRUE = 1
    VK_QUEUE_COMPUTE_BIT = 0x2
    VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT = 0x2
    VK_MEMORY_PROPERTY_HOST_COHERENT_BIT = 0x4

    class VkError(Exception):
        pass

    class VkException(Exception):
        pass

    class VkErrorOutOfPoolMemory(VkError):
        pass

    exception_codes = {-1000069000: VkErrorOutOfPoolMemory}

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.ffi = _Handle("ffi")
        self.fence_users = 0
        self.fence_overlaps = 0
        self._guard = threading.Lock()

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)

        def call(*args, **kwargs):
            self.calls.append(name)
            if name in self.fail:
                raise self.fail[name]()
            return _Handle(name)

        return call

    def vkEnumeratePhysicalDevices(self, instance):
        return ["gpu0"]

    def vkGetPhysicalDeviceQueueFamilyProperties(self, physical_device):
        return [SimpleNamespace(queueFlags=self.VK_QUEUE_COMPUTE_BIT)]

    def vkGetPhysicalDeviceProperties(self, physical_device):
        return SimpleNamespace(deviceName=b"Fake GPU", limits=SimpleNamespace(maxComputeSharedMemorySize=32768))

    def vkGetPhysicalDeviceMemoryProperties(self, physical_device):
        return SimpleNamespace(memoryTypeCount=1, memoryTypes=[SimpleNamespace(propertyFlags=0x6)])

    def vkGetBufferMemoryRequirements(self, device, buffer):
        return SimpleNamespace(memoryTypeBits=1, size=64)

    def _fence_call(self, name):
        with self._guard:
            self.calls.append(name)
            self.fence_users += 1
            if self.fence_users > 1:
                self.fence_overlaps += 1
        time.sleep(0.001)
        with self._guard:
            self.fence_users -= 1

    def vkWaitForFences(self, *args):
        self._fence_call("vkWaitForFences")

    def vkResetFences(self, *args):
        self._fence_call("vkResetFences")

    def vkQueueSubmit(self, *args):
        self._fence_call("vkQueueSubmit")


SPV = b"\x03\x02\x23\x07" * 4


@pytest.fixture
def fake_vk(monkeypatch):
    fake = FakeVulkan()
    monkeypatch.setattr(vb, "vk", fake)
    monkeypatch.setattr(vb, "compile_glsl", lambda source, **kwargs: SPV)
    return fake


def test_byte_view_accepts_buffer_objects() -> None:
    raw = bytearray(range(8))
    view = vb._byte_view(raw, 4)
    assert view.tolist() == [0, 1, 2, 3]
    view[:] = 9
    assert raw[:4] == bytearray([9, 9, 9, 9])


def test_byte_view_accepts_addresses_and_tuples() -> None:
    arr = (ctypes.c_ubyte * 4)(1, 2, 3, 4)
    addr = ctypes.addressof(arr)
    assert vb._byte_view(addr, 4).tolist() == [1, 2, 3, 4]
    assert vb._byte_view((0, addr), 2).tolist() == [1, 2]
    assert vb._byte_view(ctypes.c_void_p(addr), 3).tolist() == [1, 2, 3]


def test_read_only_mapping_is_detected() -> None:
    assert not vb._byte_view(b"\x00" * 4, 4).flags.writeable


def test_unavailable_bindings_are_a_device_failure(monkeypatch) -> None:
    monkeypatch.setattr(vb, "vk", None)
    monkeypatch.setattr(vb, "_VULKAN_IMPORT_ERROR", "libvulkan.so.1: cannot open shared object file")
    with pytest.raises(DeviceOperationFailure) as info:
        vb.VulkanDevice()
    assert info.value.operation == "load vulkan"
    assert "libvulkan" in str(info.value)


def test_unmapped_result_code_is_recovered() -> None:
    if vb.vk is None:
        pytest.skip("python-vulkan not importable here")
    with pytest.raises(DeviceOperationFailure) as info:
        with vb._vk_call("vkAllocateDescriptorSets"):
            raise KeyError(-1000069000)
    assert info.value.code == -1000069000
    assert info.value.operation == "vkAllocateDescriptorSets"


def test_float_upload_bytes_roundtrip_through_view() -> None:
    data = np.array([1.5, -2.0], dtype=np.float32)
    target = bytearray(8)
    vb._byte_view(target, 8)[:] = data.view(np.uint8)
    np.testing.assert_array_equal(np.frombuffer(bytes(target), dtype=np.float32), data)


def test_fence_is_never_used_from_two_threads_at_once(fake_vk) -> None:
    device = vb.VulkanDevice(SessionConfig())
    sig = SIGNATURES[KernelKind.MATRIX_VECTOR_MULTIPLY]
    program = device.build_program(sig, SessionConfig().kernel_path(sig.source))

    def buf(mode):
        return DeviceBuffer(device, device.allocate(16), 16, mode)

    launch = KernelLaunch(
        KernelKind.MATRIX_VECTOR_MULTIPLY,
        (4,),
        None,
        (buf(AccessMode.WRITE_ONLY), buf(AccessMode.READ_ONLY), buf(AccessMode.READ_ONLY), 4),
    )

    def submitter():
        for _ in range(30):
            device.dispatch(program, launch)

    def releaser():
        # Buffers are released outside the queue lock, concurrently with submissions.
        for _ in range(30):
            device.free(device.allocate(16))

    def waiter():
        for _ in range(30):
            device.wait_idle()

    threads = [threading.Thread(target=f) for f in (submitter, releaser, waiter)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert fake_vk.calls.count("vkQueueSubmit") == 30
    assert fake_vk.fence_overlaps == 0
    device.close()


def test_failed_program_build_destroys_partial_objects(fake_vk) -> None:
    device = vb.VulkanDevice(SessionConfig())
    fake_vk.fail["vkCreateDescriptorPool"] = FakeVulkan.VkErrorOutOfPoolMemory
    sig = SIGNATURES[KernelKind.MATRIX_MULTIPLY]

    with pytest.raises(DeviceOperationFailure) as info:
        device.build_program(sig, SessionConfig().kernel_path(sig.source))
    assert info.value.operation == "create pipeline mmul"
    assert info.value.code == -1000069000

    for destroyed in (
        "vkDestroyShaderModule",
        "vkDestroyPipeline",
        "vkDestroyPipelineLayout",
        "vkDestroyDescriptorSetLayout",
    ):
        assert fake_vk.calls.count(destroyed) == 1
    assert "vkDestroyDescriptorPool" not in fake_vk.calls

    # Nothing half-built is left for close() to destroy again.
    device.close()
    assert fake_vk.calls.count("vkDestroyPipeline") == 1
    assert fake_vk.calls[-1] == "vkDestroyInstance"


def test_close_releases_built_programs_once(fake_vk) -> None:
    device = vb.VulkanDevice(SessionConfig())
    for sig in SIGNATURES.values():
        device.build_program(sig, SessionConfig().kernel_path(sig.source))
    device.close()
    device.close()
    assert fake_vk.calls.count("vkDestroyDescriptorPool") == 2
    assert fake_vk.calls.count("vkDestroyDevice") == 1
