"""Device vector runtime: partitioned vectors, kernel cache and CuPy backend."""

from devvec_runtime.backend import Device as Device
from devvec_runtime.backend import DeviceBuffer as DeviceBuffer
from devvec_runtime.backend import DeviceClass as DeviceClass
from devvec_runtime.backend import MemFlags as MemFlags
from devvec_runtime.cuda_backend import HAS_CUPY as HAS_CUPY
from devvec_runtime.cuda_backend import CUDADevice as CUDADevice
from devvec_runtime.cuda_backend import cuda_device_count as cuda_device_count
from devvec_runtime.cuda_backend import cuda_devices as cuda_devices
from devvec_runtime.errors import BuildError as BuildError
from devvec_runtime.errors import DeviceOperationError as DeviceOperationError
from devvec_runtime.errors import DevvecError as DevvecError
from devvec_runtime.errors import ErrorCategory as ErrorCategory
from devvec_runtime.errors import LayoutMismatchError as LayoutMismatchError
from devvec_runtime.errors import ShapeMismatchError as ShapeMismatchError
from devvec_runtime.partition import partition_by_vector_perf as partition_by_vector_perf
from devvec_runtime.partition import partition_equally as partition_equally
from devvec_runtime.session import Session as Session
from devvec_runtime.session import SessionConfig as SessionConfig
from devvec_runtime.session import default_session as default_session
from devvec_runtime.session import set_partition_strategy as set_partition_strategy
from devvec_runtime.transfer import HostIterator as HostIterator
from devvec_runtime.transfer import copy as copy
from devvec_runtime.transfer import copy_range as copy_range
from devvec_runtime.vector import Element as Element
from devvec_runtime.vector import LogicalVector as LogicalVector
from devvec_runtime.vector import VectorIterator as VectorIterator
from devvec_runtime.vector import swap as swap
