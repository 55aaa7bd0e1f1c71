import threading

import pytest

from tensor_regions.backend import registry as registry_module
from tensor_regions.backend.registry import (
    KernelDef,
    KernelRegistry,
    get_kernel_registry,
    reset_kernel_registry,
)
from tensor_regions.config import PROVIDER_NAME
from tensor_regions.ir.node import Node
from tensor_regions.ops.op_types import MS_DOMAIN, OpType


def _noop(inputs, attrs=None):
    return inputs[0]


def test_registry_is_built_once_across_threads():
    reset_kernel_registry()
    seen = []
    threads = [threading.Thread(target=lambda: seen.append(get_kernel_registry())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len({id(r) for r in seen}) == 1
    assert seen[0] is get_kernel_registry()
    assert len(seen[0]) == len(registry_module._BUILTIN_KERNELS)


def test_find_kernel_by_version():
    registry = get_kernel_registry()
    attr_form = Node(OpType.SLICE, ["x"], ["y"], attrs={"starts": [0], "ends": [1]})
    assert registry.find_kernel(attr_form, PROVIDER_NAME, 9).since_version == 1
    assert registry.find_kernel(attr_form, PROVIDER_NAME, 10).since_version == 10
    assert registry.find_kernel(attr_form, PROVIDER_NAME, None) is None
    assert registry.find_kernel(attr_form, "OtherProvider", 11) is None

    mm16 = Node(OpType.MATMUL_INTEGER16, ["a", "b"], ["y"], domain=MS_DOMAIN)
    assert registry.find_kernel(mm16, PROVIDER_NAME, 1) is not None
    assert registry.has_kernel(OpType.MATMUL_INTEGER16, MS_DOMAIN, PROVIDER_NAME)
    assert not registry.has_kernel(OpType.MATMUL_INTEGER16, "", PROVIDER_NAME)


def test_overlapping_versions_are_rejected():
    registry = KernelRegistry()
    registry.register(KernelDef("Foo", "", 1, 5, PROVIDER_NAME, _noop))
    registry.register(KernelDef("Foo", "", 6, None, PROVIDER_NAME, _noop))
    # Other providers keep their own ranges
    registry.register(KernelDef("Foo", "", 1, None, "Other", _noop))
    with pytest.raises(ValueError, match="overlaps"):
        registry.register(KernelDef("Foo", "", 5, 7, PROVIDER_NAME, _noop))
    assert len(registry) == 3
