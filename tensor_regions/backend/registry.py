# tensor_regions/backend/registry.py
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..config import PROVIDER_NAME
from ..ir.node import Node
from ..ops.op_types import ONNX_DOMAIN


@dataclass(frozen=True)
class KernelDef:
    op_type: str
    domain: str
    since_version: int
    end_version: Optional[int]  # inclusive, None means open-ended
    provider: str
    fn: Callable

    def matches_version(self, version: Optional[int]) -> bool:
        if version is None:
            return False
        if version < self.since_version:
            return False
        return self.end_version is None or version <= self.end_version

    def __repr__(self):
        end = self.end_version if self.end_version is not None else "*"
        return f"<{self.domain or 'ai.onnx'}::{self.op_type} v{self.since_version}-{end} @ {self.provider}>"


# Kernels collected by @register_kernel at import time of backend.kernels.
# They only become queryable once get_kernel_registry() builds the registry.
_BUILTIN_KERNELS: List[KernelDef] = []


def register_kernel(
    op_type: str,
    since_version: int = 1,
    end_version: Optional[int] = None,
    domain: str = ONNX_DOMAIN,
    provider: str = PROVIDER_NAME,
):
    def decorator(func):
        _BUILTIN_KERNELS.append(
            KernelDef(op_type, domain, since_version, end_version, provider, func)
        )
        return func

    return decorator


class KernelRegistry:
    def __init__(self):
        # (domain, op_type) -> provider -> candidate kernels
        self._kernels: Dict[Tuple[str, str], Dict[str, List[KernelDef]]] = {}

    def register(self, kernel: KernelDef):
        candidates = self._kernels.setdefault((kernel.domain, kernel.op_type), {}).setdefault(
            kernel.provider, []
        )
        for existing in candidates:
            lo = max(existing.since_version, kernel.since_version)
            hi_a = existing.end_version if existing.end_version is not None else float("inf")
            hi_b = kernel.end_version if kernel.end_version is not None else float("inf")
            if lo <= min(hi_a, hi_b):
                raise ValueError(
                    f"Kernel registration error: {kernel} overlaps the versions of {existing}"
                )
        candidates.append(kernel)

    def has_kernel(self, op_type: str, domain: str, provider: str) -> bool:
        return len(self._kernels.get((domain, op_type), {}).get(provider, [])) > 0

    def find_kernel(self, node: Node, provider: str, version: Optional[int]) -> Optional[KernelDef]:
        """
        Returns the kernel registered for the node's op type and domain on
        `provider` whose version range covers the graph's opset version.
        """
        candidates = self._kernels.get((node.domain, node.op_type), {}).get(provider, [])
        for kernel in candidates:
            if kernel.matches_version(version):
                return kernel
        return None

    def __len__(self):
        return sum(
            len(kernels)
            for by_provider in self._kernels.values()
            for kernels in by_provider.values()
        )


_registry: Optional[KernelRegistry] = None
_registry_lock = threading.Lock()


def get_kernel_registry() -> KernelRegistry:
    """
    Process-wide kernel registry.

    The registry is built exactly once: the first caller imports the kernel
    modules and registers every collected kernel while holding the lock,
    later callers (from any thread) get the same instance.
    """
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                from . import kernels  # noqa: F401  (populates _BUILTIN_KERNELS)

                registry = KernelRegistry()
                for kernel in _BUILTIN_KERNELS:
                    registry.register(kernel)
                _registry = registry
    return _registry


def reset_kernel_registry():
    """Drops the process-wide registry so the next access rebuilds it."""
    global _registry
    with _registry_lock:
        _registry = None
