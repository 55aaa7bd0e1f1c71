import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from tqdm import tqdm

from ..backend.memory import Allocator, write_into
from ..config import DEBUG_PARTITION, DEBUG_DETAILED
from ..errors import UnimplementedTypeError
from ..ir.dtypes import DType
from ..ir.graph import Graph
from ..ir.shape import format_shape
from ..ir.tensor import TensorProto, is_unpack_supported, unpack_tensor
from ..compiler.region import ClaimedRegion


@dataclass
class CapturedInitializer:
    name: str
    dtype: DType
    shape: tuple
    buffer: Any  # owned by the store's allocator


class ConstantInitializerStore:
    """
    Private copies of the constant initializers claimed regions read.

    Entries are captured before the host is allowed to drop its own
    initializer storage and live until the provider is released. The map is
    append-only: a name is captured once and never replaced.
    """

    def __init__(self, allocator: Allocator):
        self.allocator = allocator
        self._entries: Dict[str, CapturedInitializer] = {}
        self._lock = threading.Lock()

    def capture(self, name: str, proto: TensorProto) -> bool:
        with self._lock:
            if name in self._entries:
                return True

            try:
                dtype = DType.from_code(proto.data_type)
            except ValueError:
                raise UnimplementedTypeError(
                    f"Unimplemented type: code {proto.data_type} for initializer '{name}'"
                )
            if not is_unpack_supported(dtype):
                raise UnimplementedTypeError(
                    f"Unimplemented type: {dtype.name} for initializer '{name}'"
                )

            shape = tuple(int(d) for d in proto.dims)
            buffer = self.allocator.alloc(shape, dtype, tag=name)
            try:
                if self.allocator.is_torch:
                    # Decode on the host, then move into device storage
                    write_into(buffer, unpack_tensor(proto))
                else:
                    unpack_tensor(proto, out=buffer)
            except ValueError:
                self.allocator.free(buffer)
                raise

            self._entries[name] = CapturedInitializer(name, dtype, shape, buffer)

        if DEBUG_PARTITION and DEBUG_DETAILED:
            print(f"[Store] Captured {name}: {dtype.value} {format_shape(shape)}")
        return True

    def capture_regions(self, graph: Graph, regions: Iterable[ClaimedRegion]) -> List[str]:
        """
        Captures every constant initializer a claimed node reads or writes.
        Initializers that are also graph inputs can be overridden by the
        caller and are left alone.
        """
        captured = []
        nodes = [node for region in regions for node in region.nodes]
        for node in tqdm(nodes, disable=not DEBUG_PARTITION, desc="Capturing constants"):
            for name, _ in node.for_each_def():
                if not graph.is_constant_initializer(name):
                    continue
                if name not in self:
                    captured.append(name)
                self.capture(name, graph.get_initializer(name))

        if DEBUG_PARTITION and captured:
            print(f"[Store] Captured {len(captured)} constant initializers")
        return captured

    def get(self, name: str) -> Optional[CapturedInitializer]:
        return self._entries.get(name)

    def names(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self):
        return len(self._entries)

    def release(self):
        with self._lock:
            for entry in self._entries.values():
                self.allocator.free(entry.buffer)
            self._entries.clear()
