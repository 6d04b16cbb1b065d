"""Op support tables: which operators, device functions and element types a
vector expression may use inside a generated kernel.

Each operator tag maps to the CUDA C operator emitted by the source generator.
Tags double as the tokens used to build readable kernel names.
"""

from __future__ import annotations

from enum import Enum, auto

import numpy as np


class OpCategory(Enum):
    BINARY = auto()
    UNARY = auto()
    FUNCTION = auto()


_BINARY_OPERATORS: dict[str, str] = {
    # Arithmetic
    "add": "+",
    "sub": "-",
    "mul": "*",
    "div": "/",
    "mod": "%",
    # Bitwise (integer element types only; NVRTC rejects them for floats)
    "and": "&",
    "or": "|",
    "xor": "^",
    "lshift": "<<",
    "rshift": ">>",
}

_UNARY_OPERATORS: dict[str, str] = {
    "neg": "-",
    "pos": "+",
    "invert": "~",
}

# CUDA math builtins: name -> arity. These need no declaration in the source.
_BUILTIN_FUNCTIONS: dict[str, int] = {
    "sin": 1,
    "cos": 1,
    "tan": 1,
    "exp": 1,
    "log": 1,
    "log10": 1,
    "sqrt": 1,
    "rsqrt": 1,
    "fabs": 1,
    "floor": 1,
    "ceil": 1,
    "pow": 2,
    "fmin": 2,
    "fmax": 2,
    "hypot": 2,
    "atan2": 2,
}

_C_TYPE_NAMES: dict[np.dtype, str] = {
    np.dtype(np.float32): "float",
    np.dtype(np.float64): "double",
    np.dtype(np.int8): "char",
    np.dtype(np.uint8): "unsigned char",
    np.dtype(np.int16): "short",
    np.dtype(np.uint16): "unsigned short",
    np.dtype(np.int32): "int",
    np.dtype(np.uint32): "unsigned int",
    np.dtype(np.int64): "long long",
    np.dtype(np.uint64): "unsigned long long",
}


def classify_op(tag: str) -> OpCategory:
    if tag in _BINARY_OPERATORS:
        return OpCategory.BINARY
    if tag in _UNARY_OPERATORS:
        return OpCategory.UNARY
    if tag in _BUILTIN_FUNCTIONS:
        return OpCategory.FUNCTION
    raise KeyError(f"Unknown expression op: {tag!r}")


def _lookup(tag: str, category: OpCategory, table: dict):
    found = classify_op(tag)
    if found is not category:
        raise KeyError(f"{tag!r} is a {found.name.lower()} op, not {category.name.lower()}")
    return table[tag]


def binary_operator(tag: str) -> str:
    return _lookup(tag, OpCategory.BINARY, _BINARY_OPERATORS)


def unary_operator(tag: str) -> str:
    return _lookup(tag, OpCategory.UNARY, _UNARY_OPERATORS)


def builtin_arity(name: str) -> int:
    return _lookup(name, OpCategory.FUNCTION, _BUILTIN_FUNCTIONS)


def get_builtin_functions() -> frozenset[str]:
    return frozenset(_BUILTIN_FUNCTIONS)


def is_supported_dtype(dtype) -> bool:
    return np.dtype(dtype) in _C_TYPE_NAMES


def c_type_name(dtype) -> str:
    """Return the CUDA C spelling of a numpy element type.

    Raises:
        TypeError: the element type has no kernel representation.
    """
    dt = np.dtype(dtype)
    try:
        return _C_TYPE_NAMES[dt]
    except KeyError:
        raise TypeError(f"Unsupported vector element type: {dt}") from None


def dtype_token(dtype) -> str:
    """Short dtype tag used in kernel names, e.g. 'f4', 'i8', 'u1'."""
    return np.dtype(dtype).str.lstrip("<>|=")
