from .provider import RegionExecutionProvider
from .compilation import CompilationManager, CompilationPass, NodeComputeInfo
from .kernel_state import KernelContext, KernelState, KernelStatus
from .initializer_store import ConstantInitializerStore
from .domain_registry import DomainVersionRegistry
