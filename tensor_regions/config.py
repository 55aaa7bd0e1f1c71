DEBUG_PARTITION = False
DEBUG_DETAILED = False

# Declined graphs and nodes are reported even when debugging is off.
LOG_DECLINES = True

# Name this provider registers its kernels under.
PROVIDER_NAME = "TensorRegionsExecutionProvider"

# Prefix for fused node names handed back to the host.
FUSED_NODE_PREFIX = "TensorRegions"

# Allocator Configuration
DEFAULT_DEVICE_ID = 0
ALLOCATOR_ALIGNMENT = 64  # bytes
