class ShapeInferenceError(ValueError):
    """Raised by a shape handler when a graph cannot be shape-inferred."""


class UnimplementedTypeError(NotImplementedError):
    """Raised for an element type or operator variant that is not handled yet."""


class InconsistentDomainVersionError(RuntimeError):
    """Raised when one provider instance sees two opset versions for a domain."""


class PartitionError(RuntimeError):
    """Raised when partitioning cannot complete or produced an invalid claim set."""


class ExecutionError(RuntimeError):
    """Raised by a compute call. The kernel state stays usable."""


class StateReleasedError(ExecutionError):
    """Raised when computing on a kernel state that has been released."""
