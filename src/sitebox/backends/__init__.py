from .base import Backend, BackendHandle, ExitCallback
from .container import ContainerBackend
from .docker_ops import DockerClientWrapper
from .native import NativeProcessBackend

__all__ = [
    "Backend",
    "BackendHandle",
    "ContainerBackend",
    "DockerClientWrapper",
    "ExitCallback",
    "NativeProcessBackend",
]
