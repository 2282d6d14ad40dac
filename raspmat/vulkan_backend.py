# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Vulkan compute device for raspmat.

Owns one instance, one logical device, ONE compute queue and a single
reusable command buffer guarded by a fence, so all work executes in
submission order. Kernel programs are GLSL compute shaders built with
``glslc`` and turned into compute pipelines whose layout follows the kernel's
argument signature:

- buffer arguments become storage-buffer bindings 0..n-1 in argument order,
- int arguments become 32-bit push constants in argument order,
- local scratch is the shader's shared memory, sized through specialization
  constant 0 (the tile edge).
"""

import ctypes
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

import numpy as np

from .compiler import compile_glsl
from .config import SessionConfig
from .errors import BuildFailure, DeviceOperationFailure
from .kernels import KernelLaunch, KernelSignature, LocalScratch, group_counts

try:
    # python package: "vulkan" (cffi bindings); needs a Vulkan loader at import.
    import vulkan as vk  # type: ignore

    _VULKAN_IMPORT_ERROR: Optional[str] = None
except (ImportError, OSError) as _e:  # pragma: no cover - depends on host
    vk = None  # type: ignore[assignment]
    _VULKAN_IMPORT_ERROR = str(_e)


logger = logging.getLogger(__name__)

_WAIT_FOREVER = 0xFFFFFFFFFFFFFFFF


@dataclass
class VulkanAllocation:
    buffer: Any
    memory: Any
    nbytes: int


@dataclass
class VulkanProgram:
    signature: KernelSignature
    pipeline: Any
    pipeline_layout: Any
    descriptor_set_layout: Any
    descriptor_pool: Any
    descriptor_set: Any
    push_size: int = 0


def _result_code(exc: BaseException) -> Optional[int]:
    if vk is None:
        return None
    if isinstance(exc, KeyError):
        # python-vulkan raises KeyError(code) for results it cannot map.
        code = exc.args[0] if exc.args else None
        return code if isinstance(code, int) else None
    for code, cls in getattr(vk, "exception_codes", {}).items():
        if type(exc) is cls:
            return int(code)
    return None


def _vk_errors() -> tuple[type[BaseException], ...]:
    names = ("VkError", "VkException")
    return tuple(getattr(vk, n) for n in names if hasattr(vk, n)) + (KeyError,)


@contextmanager
def _vk_call(operation: str) -> Iterator[None]:
    """Translate python-vulkan errors raised inside the block."""
    try:
        yield
    except _vk_errors() as e:
        raise DeviceOperationFailure(operation, _result_code(e), type(e).__name__) from e


def _byte_view(mapped: Any, nbytes: int) -> np.ndarray:
    """Normalize whatever vkMapMemory returned into a uint8 array view."""
    if isinstance(mapped, (tuple, list)):
        mapped = mapped[1]
    if hasattr(mapped, "value"):
        mapped = mapped.value
    if isinstance(mapped, (int, np.integer)):
        raw = (ctypes.c_ubyte * nbytes).from_address(int(mapped))
        return np.frombuffer(raw, dtype=np.uint8, count=nbytes)
    return np.frombuffer(mapped, dtype=np.uint8, count=nbytes)


class VulkanDevice:
    def __init__(self, config: Optional[SessionConfig] = None) -> None:
        if vk is None:
            raise DeviceOperationFailure("load vulkan", None, _VULKAN_IMPORT_ERROR or "")

        self.config = config or SessionConfig()
        self.name = "<uninitialized>"

        self.instance: Any = None
        self.physical_device: Any = None
        self.device: Any = None
        self.queue: Any = None
        self.queue_family_index: Optional[int] = None
        self.command_pool: Any = None
        self.command_buffer: Any = None
        # Guards the fence, the command buffer and _pending; free() runs
        # outside the session queue lock.
        self._fence_lock = threading.Lock()
        self._fence: Any = None
        self._pending = False

        self.max_shared_memory = 0
        self._programs: list[VulkanProgram] = []
        self._allocations: dict[int, VulkanAllocation] = {}

        try:
            self._init()
        except BaseException:
            self.close()
            raise

    # ------------------------------
    # Init
    # ------------------------------
    def _init(self) -> None:
        app_info = vk.VkApplicationInfo(
            sType=vk.VK_STRUCTURE_TYPE_APPLICATION_INFO,
            pApplicationName=b"raspmat",
            applicationVersion=vk.VK_MAKE_VERSION(0, 1, 0),
            pEngineName=b"raspmat",
            engineVersion=vk.VK_MAKE_VERSION(0, 1, 0),
            apiVersion=vk.VK_API_VERSION_1_0,
        )
        create_info = vk.VkInstanceCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_INSTANCE_CREATE_INFO,
            pApplicationInfo=app_info,
        )
        with _vk_call("vkCreateInstance"):
            self.instance = vk.vkCreateInstance(create_info, None)

        with _vk_call("vkEnumeratePhysicalDevices"):
            devices = vk.vkEnumeratePhysicalDevices(self.instance)
        if not devices:
            raise DeviceOperationFailure("vkEnumeratePhysicalDevices", None, "no Vulkan physical devices")

        # First device with a compute queue.
        for pd in devices:
            for i, qp in enumerate(vk.vkGetPhysicalDeviceQueueFamilyProperties(pd)):
                if qp.queueFlags & vk.VK_QUEUE_COMPUTE_BIT:
                    self.physical_device = pd
                    self.queue_family_index = int(i)
                    break
            if self.physical_device is not None:
                break
        if self.physical_device is None or self.queue_family_index is None:
            raise DeviceOperationFailure("select device", None, "no Vulkan compute queue found")

        props = vk.vkGetPhysicalDeviceProperties(self.physical_device)
        name = props.deviceName
        self.name = name.decode("utf-8", errors="replace") if isinstance(name, bytes) else str(name)
        self.max_shared_memory = int(props.limits.maxComputeSharedMemorySize)
        logger.info("Using Vulkan device %s (queue family %d)", self.name, self.queue_family_index)

        qci = vk.VkDeviceQueueCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DEVICE_QUEUE_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            queueCount=1,
            pQueuePriorities=[1.0],
        )
        dci = vk.VkDeviceCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_DEVICE_CREATE_INFO,
            queueCreateInfoCount=1,
            pQueueCreateInfos=[qci],
        )
        with _vk_call("vkCreateDevice"):
            self.device = vk.vkCreateDevice(self.physical_device, dci, None)
            self.queue = vk.vkGetDeviceQueue(self.device, self.queue_family_index, 0)

        cpci = vk.VkCommandPoolCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_COMMAND_POOL_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            flags=vk.VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT,
        )
        with _vk_call("vkCreateCommandPool"):
            self.command_pool = vk.vkCreateCommandPool(self.device, cpci, None)
            cbai = vk.VkCommandBufferAllocateInfo(
                sType=vk.VK_STRUCTURE_TYPE_COMMAND_BUFFER_ALLOCATE_INFO,
                commandPool=self.command_pool,
                level=vk.VK_COMMAND_BUFFER_LEVEL_PRIMARY,
                commandBufferCount=1,
            )
            self.command_buffer = vk.vkAllocateCommandBuffers(self.device, cbai)[0]
            fence_ci = vk.VkFenceCreateInfo(sType=vk.VK_STRUCTURE_TYPE_FENCE_CREATE_INFO)
            self._fence = vk.vkCreateFence(self.device, fence_ci, None)

    # ------------------------------
    # Programs
    # ------------------------------
    def build_program(self, signature: KernelSignature, source: Path) -> VulkanProgram:
        try:
            spv = compile_glsl(source, cache_dir=self.config.cache_dir, glslc=self.config.glslc)
        except BuildFailure as e:
            e.device = self.name
            raise

        bindings = [
            vk.VkDescriptorSetLayoutBinding(
                binding=i,
                descriptorType=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                descriptorCount=1,
                stageFlags=vk.VK_SHADER_STAGE_COMPUTE_BIT,
            )
            for i in range(signature.buffer_count)
        ]
        push_size = 4 * signature.int_count

        dsl = pll = pipeline = pool = None
        try:
            with _vk_call(f"create pipeline {signature.name}"):
                dsl = vk.vkCreateDescriptorSetLayout(
                    self.device,
                    vk.VkDescriptorSetLayoutCreateInfo(
                        sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_SET_LAYOUT_CREATE_INFO,
                        bindingCount=len(bindings),
                        pBindings=bindings,
                    ),
                    None,
                )
                ranges = []
                if push_size:
                    ranges.append(
                        vk.VkPushConstantRange(stageFlags=vk.VK_SHADER_STAGE_COMPUTE_BIT, offset=0, size=push_size)
                    )
                pll = vk.vkCreatePipelineLayout(
                    self.device,
                    vk.VkPipelineLayoutCreateInfo(
                        sType=vk.VK_STRUCTURE_TYPE_PIPELINE_LAYOUT_CREATE_INFO,
                        setLayoutCount=1,
                        pSetLayouts=[dsl],
                        pushConstantRangeCount=len(ranges),
                        pPushConstantRanges=ranges or None,
                    ),
                    None,
                )

                code_u32 = (ctypes.c_uint32 * (len(spv) // 4)).from_buffer_copy(spv)
                sm = vk.vkCreateShaderModule(
                    self.device,
                    vk.VkShaderModuleCreateInfo(
                        sType=vk.VK_STRUCTURE_TYPE_SHADER_MODULE_CREATE_INFO,
                        codeSize=len(spv),
                        pCode=code_u32,
                    ),
                    None,
                )

                spec_info = None
                if signature.uses_local:
                    tile = vk.ffi.new("uint32_t[1]", [signature.workgroup[0]])
                    spec_info = vk.VkSpecializationInfo(
                        mapEntryCount=1,
                        pMapEntries=[vk.VkSpecializationMapEntry(constantID=0, offset=0, size=4)],
                        dataSize=4,
                        pData=tile,
                    )
                stage = vk.VkPipelineShaderStageCreateInfo(
                    sType=vk.VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
                    stage=vk.VK_SHADER_STAGE_COMPUTE_BIT,
                    module=sm,
                    pName=b"main",
                    pSpecializationInfo=spec_info,
                )
                cpci = vk.VkComputePipelineCreateInfo(
                    sType=vk.VK_STRUCTURE_TYPE_COMPUTE_PIPELINE_CREATE_INFO,
                    stage=stage,
                    layout=pll,
                )
                try:
                    pipeline = vk.vkCreateComputePipelines(self.device, vk.VK_NULL_HANDLE, 1, [cpci], None)[0]
                finally:
                    vk.vkDestroyShaderModule(self.device, sm, None)

                pool = vk.vkCreateDescriptorPool(
                    self.device,
                    vk.VkDescriptorPoolCreateInfo(
                        sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_POOL_CREATE_INFO,
                        maxSets=1,
                        poolSizeCount=1,
                        pPoolSizes=[
                            vk.VkDescriptorPoolSize(
                                type=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                                descriptorCount=max(1, len(bindings)),
                            )
                        ],
                    ),
                    None,
                )
                ds = vk.vkAllocateDescriptorSets(
                    self.device,
                    vk.VkDescriptorSetAllocateInfo(
                        sType=vk.VK_STRUCTURE_TYPE_DESCRIPTOR_SET_ALLOCATE_INFO,
                        descriptorPool=pool,
                        descriptorSetCount=1,
                        pSetLayouts=[dsl],
                    ),
                )[0]
        except BaseException:
            self._destroy_program_objects(pipeline, pll, pool, dsl)
            raise

        program = VulkanProgram(
            signature=signature,
            pipeline=pipeline,
            pipeline_layout=pll,
            descriptor_set_layout=dsl,
            descriptor_pool=pool,
            descriptor_set=ds,
            push_size=push_size,
        )
        self._programs.append(program)
        logger.debug("Built pipeline %s from %s", signature.name, Path(source).name)
        return program

    # ------------------------------
    # Buffers
    # ------------------------------
    def _find_memory_type(self, type_bits: int, props: int) -> int:
        mem_props = vk.vkGetPhysicalDeviceMemoryProperties(self.physical_device)
        for i in range(mem_props.memoryTypeCount):
            if (type_bits & (1 << i)) and (mem_props.memoryTypes[i].propertyFlags & props) == props:
                return i
        raise DeviceOperationFailure("find memory type", None, "no host-visible coherent memory")

    def allocate(self, nbytes: int) -> VulkanAllocation:
        bci = vk.VkBufferCreateInfo(
            sType=vk.VK_STRUCTURE_TYPE_BUFFER_CREATE_INFO,
            size=nbytes,
            usage=vk.VK_BUFFER_USAGE_STORAGE_BUFFER_BIT,
            sharingMode=vk.VK_SHARING_MODE_EXCLUSIVE,
        )
        with _vk_call("vkCreateBuffer"):
            buf = vk.vkCreateBuffer(self.device, bci, None)
        try:
            req = vk.vkGetBufferMemoryRequirements(self.device, buf)
            mem_type = self._find_memory_type(
                req.memoryTypeBits,
                vk.VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | vk.VK_MEMORY_PROPERTY_HOST_COHERENT_BIT,
            )
            mai = vk.VkMemoryAllocateInfo(
                sType=vk.VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
                allocationSize=req.size,
                memoryTypeIndex=mem_type,
            )
            with _vk_call("vkAllocateMemory"):
                mem = vk.vkAllocateMemory(self.device, mai, None)
        except BaseException:
            vk.vkDestroyBuffer(self.device, buf, None)
            raise
        with _vk_call("vkBindBufferMemory"):
            vk.vkBindBufferMemory(self.device, buf, mem, 0)

        allocation = VulkanAllocation(buffer=buf, memory=mem, nbytes=nbytes)
        self._allocations[id(allocation)] = allocation
        return allocation

    def upload(self, allocation: VulkanAllocation, data: np.ndarray) -> None:
        arr = np.ascontiguousarray(data, dtype=np.float32)
        if arr.nbytes > allocation.nbytes:
            raise ValueError(f"upload of {arr.nbytes} bytes into a {allocation.nbytes}-byte buffer")
        with _vk_call("vkMapMemory"):
            mapped = vk.vkMapMemory(self.device, allocation.memory, 0, arr.nbytes, 0)
        try:
            view = _byte_view(mapped, arr.nbytes)
            if not view.flags.writeable:
                raise DeviceOperationFailure("vkMapMemory", None, "mapping is not writable")
            view[:] = arr.reshape(-1).view(np.uint8)
        finally:
            vk.vkUnmapMemory(self.device, allocation.memory)

    def download(self, allocation: VulkanAllocation, nbytes: int) -> bytes:
        self.wait_idle()
        with _vk_call("vkMapMemory"):
            mapped = vk.vkMapMemory(self.device, allocation.memory, 0, nbytes, 0)
        try:
            return _byte_view(mapped, nbytes).tobytes()
        finally:
            vk.vkUnmapMemory(self.device, allocation.memory)

    def free(self, allocation: VulkanAllocation) -> None:
        if self._allocations.pop(id(allocation), None) is None:
            return
        # The buffer may still be referenced by in-flight work.
        self.wait_idle()
        vk.vkDestroyBuffer(self.device, allocation.buffer, None)
        vk.vkFreeMemory(self.device, allocation.memory, None)

    # ------------------------------
    # Dispatch
    # ------------------------------
    def dispatch(self, program: VulkanProgram, launch: KernelLaunch) -> None:
        sig = program.signature
        scratch = sum(a.nbytes for a in launch.args if isinstance(a, LocalScratch))
        if scratch > self.max_shared_memory:
            raise DeviceOperationFailure(
                f"launch {sig.name}", None, f"{scratch} bytes of local memory exceeds {self.max_shared_memory}"
            )

        # Single command buffer: previous submission must have completed.
        with self._fence_lock:
            self._wait_fence()

            buffers = launch.buffers()
            writes = [
                vk.VkWriteDescriptorSet(
                    sType=vk.VK_STRUCTURE_TYPE_WRITE_DESCRIPTOR_SET,
                    dstSet=program.descriptor_set,
                    dstBinding=i,
                    descriptorCount=1,
                    descriptorType=vk.VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                    pBufferInfo=[
                        vk.VkDescriptorBufferInfo(buffer=b.allocation.buffer, offset=0, range=b.nbytes)
                    ],
                )
                for i, b in enumerate(buffers)
            ]
            cb = self.command_buffer
            with _vk_call(f"enqueue {sig.name}"):
                vk.vkUpdateDescriptorSets(self.device, len(writes), writes, 0, None)

                vk.vkResetCommandBuffer(cb, 0)
                vk.vkBeginCommandBuffer(
                    cb,
                    vk.VkCommandBufferBeginInfo(
                        sType=vk.VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
                        flags=vk.VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
                    ),
                )
                vk.vkCmdBindPipeline(cb, vk.VK_PIPELINE_BIND_POINT_COMPUTE, program.pipeline)
                vk.vkCmdBindDescriptorSets(
                    cb,
                    vk.VK_PIPELINE_BIND_POINT_COMPUTE,
                    program.pipeline_layout,
                    0,
                    1,
                    [program.descriptor_set],
                    0,
                    None,
                )
                ints = launch.ints()
                if program.push_size:
                    pc = vk.ffi.new(f"uint32_t[{len(ints)}]", ints)
                    vk.vkCmdPushConstants(
                        cb, program.pipeline_layout, vk.VK_SHADER_STAGE_COMPUTE_BIT, 0, program.push_size, pc
                    )
                gx, gy, gz = group_counts(launch.global_size, sig.workgroup)
                vk.vkCmdDispatch(cb, gx, gy, gz)

                # Make shader writes visible to host reads after the fence.
                barrier = vk.VkMemoryBarrier(
                    sType=vk.VK_STRUCTURE_TYPE_MEMORY_BARRIER,
                    srcAccessMask=vk.VK_ACCESS_SHADER_WRITE_BIT,
                    dstAccessMask=vk.VK_ACCESS_HOST_READ_BIT,
                )
                vk.vkCmdPipelineBarrier(
                    cb,
                    vk.VK_PIPELINE_STAGE_COMPUTE_SHADER_BIT,
                    vk.VK_PIPELINE_STAGE_HOST_BIT,
                    0,
                    1,
                    [barrier],
                    0,
                    None,
                    0,
                    None,
                )
                vk.vkEndCommandBuffer(cb)

                submit = vk.VkSubmitInfo(
                    sType=vk.VK_STRUCTURE_TYPE_SUBMIT_INFO,
                    commandBufferCount=1,
                    pCommandBuffers=[cb],
                )
                vk.vkResetFences(self.device, 1, [self._fence])
                vk.vkQueueSubmit(self.queue, 1, [submit], self._fence)
            self._pending = True

    def wait_idle(self) -> None:
        with self._fence_lock:
            self._wait_fence()

    def _wait_fence(self) -> None:
        if not self._pending:
            return
        timeout = self.config.fence_timeout_ns
        with _vk_call("vkWaitForFences"):
            vk.vkWaitForFences(
                self.device, 1, [self._fence], vk.VK_TRUE, _WAIT_FOREVER if timeout is None else int(timeout)
            )
        self._pending = False

    # ------------------------------
    # Teardown
    # ------------------------------
    def _destroy_program_objects(self, pipeline: Any, pipeline_layout: Any, pool: Any, set_layout: Any) -> None:
        # Destroying the pool frees the descriptor set allocated from it.
        if pipeline is not None:
            vk.vkDestroyPipeline(self.device, pipeline, None)
        if pipeline_layout is not None:
            vk.vkDestroyPipelineLayout(self.device, pipeline_layout, None)
        if pool is not None:
            vk.vkDestroyDescriptorPool(self.device, pool, None)
        if set_layout is not None:
            vk.vkDestroyDescriptorSetLayout(self.device, set_layout, None)

    def close(self) -> None:
        with self._fence_lock:
            self._close()

    def _close(self) -> None:
        if self.device is not None:
            if self._pending:
                vk.vkDeviceWaitIdle(self.device)
                self._pending = False
            for allocation in list(self._allocations.values()):
                vk.vkDestroyBuffer(self.device, allocation.buffer, None)
                vk.vkFreeMemory(self.device, allocation.memory, None)
            self._allocations.clear()
            for p in self._programs:
                self._destroy_program_objects(
                    p.pipeline, p.pipeline_layout, p.descriptor_pool, p.descriptor_set_layout
                )
            self._programs.clear()
            if self._fence is not None:
                vk.vkDestroyFence(self.device, self._fence, None)
                self._fence = None
            if self.command_pool is not None:
                vk.vkDestroyCommandPool(self.device, self.command_pool, None)
                self.command_pool = None
                self.command_buffer = None
            vk.vkDestroyDevice(self.device, None)
            self.device = None
        if self.instance is not None:
            vk.vkDestroyInstance(self.instance, None)
            self.instance = None
