"""
Dimension and shape helpers.

A dimension is one of:
  - int: a concrete extent
  - sympy.Expr with free symbols: a symbolic extent ("N", "2*N", ...)
  - None: unknown, shape inference could not say anything about it

A shape is a tuple of dimensions, or None when the shape itself is absent.
"""

from typing import Any, Optional, Tuple, Union

import sympy

Dim = Union[int, sympy.Expr, None]
Shape = Optional[Tuple[Dim, ...]]


def sym(name: str) -> sympy.Symbol:
    """Named symbolic dimension. Extents are never negative."""
    return sympy.Symbol(name, integer=True, nonnegative=True)


def as_dim(value: Any) -> Dim:
    """Normalizes user-facing dimension values (ints, strings, sympy) to a Dim."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("bool is not a dimension")
    if isinstance(value, str):
        return sym(value)
    if isinstance(value, sympy.Expr):
        if value.is_Integer:
            return int(value)
        return value
    return int(value)


def as_shape(shape: Any) -> Shape:
    if shape is None:
        return None
    return tuple(as_dim(d) for d in shape)


def is_symbolic(dim: Dim) -> bool:
    return isinstance(dim, sympy.Expr) and bool(dim.free_symbols)


def is_dim_defined(dim: Dim) -> bool:
    """
    A dimension is fully defined if it is a positive concrete value or a
    named symbolic parameter. Zero, negative and unknown dims are not.
    """
    if isinstance(dim, bool):
        return False
    if isinstance(dim, int):
        return dim > 0
    return is_symbolic(dim)


def is_shape_defined(shape: Shape) -> bool:
    if shape is None:
        return False
    return all(is_dim_defined(d) for d in shape)


def has_value(shape: Shape, axis: int) -> bool:
    """True if the given axis carries a concrete integer extent."""
    if shape is None:
        return False
    return isinstance(shape[axis], int) and not isinstance(shape[axis], bool)


def dims_equal(a: Dim, b: Dim) -> bool:
    if a is None or b is None:
        return False
    if isinstance(a, int) and isinstance(b, int):
        return a == b
    return sympy.simplify(sympy.sympify(a) - sympy.sympify(b)) == 0


def normalize_axis(axis: int, rank: int) -> int:
    if axis < -rank or axis >= max(rank, 1):
        raise ValueError(f"axis {axis} is out of range for rank {rank}")
    return axis + rank if axis < 0 else axis


def format_shape(shape: Shape) -> str:
    if shape is None:
        return "<absent>"
    return "[" + ",".join("?" if d is None else str(d) for d in shape) + "]"
