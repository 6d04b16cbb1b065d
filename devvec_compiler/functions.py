"""Device functions callable inside vector expressions.

Builtins map straight onto CUDA math functions. A UserFunction carries its
own body and is emitted once as a ``__device__`` function ahead of every
kernel that references it.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from devvec_compiler.expr import FunctionCall, as_expression
from devvec_compiler.op_support import builtin_arity, c_type_name, dtype_token, get_builtin_functions


@dataclass(frozen=True)
class BuiltinFunction:
    name: str

    def __post_init__(self):
        if self.name not in get_builtin_functions():
            raise ValueError(f"{self.name!r} is not a builtin device function")

    @property
    def arity(self) -> int:
        return builtin_arity(self.name)

    @property
    def key(self) -> tuple:
        return ("builtin", self.name)

    def declaration(self) -> str | None:
        return None

    def __call__(self, *args) -> FunctionCall:
        if len(args) != self.arity:
            raise TypeError(f"{self.name}() takes {self.arity} argument(s), got {len(args)}")
        return FunctionCall(function=self, args=tuple(as_expression(a) for a in args))


@dataclass(frozen=True, init=False)
class UserFunction:
    """A user-defined device function.

    Example::

        squared_radius = UserFunction(
            "squared_radius", "float32",
            [("x", "float32"), ("y", "float32")],
            "return x * x + y * y;",
        )
        r.assign(squared_radius(x, y))
    """

    name: str
    result_type: np.dtype
    params: tuple[tuple[str, np.dtype], ...]
    body: str

    def __init__(self, name: str, result_type, params, body: str):
        if not name.isidentifier():
            raise ValueError(f"Invalid device function name: {name!r}")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "result_type", np.dtype(result_type))
        object.__setattr__(self, "params", tuple((p, np.dtype(t)) for p, t in params))
        object.__setattr__(self, "body", body)
        c_type_name(self.result_type)
        for _, t in self.params:
            c_type_name(t)

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def key(self) -> tuple:
        return (
            "user",
            self.name,
            dtype_token(self.result_type),
            tuple((p, dtype_token(t)) for p, t in self.params),
            self.body,
        )

    def declaration(self) -> str:
        params = ", ".join(f"{c_type_name(t)} {p}" for p, t in self.params)
        return (
            f"__device__ {c_type_name(self.result_type)} {self.name}({params}) {{\n"
            f"    {self.body}\n"
            f"}}"
        )

    def __call__(self, *args) -> FunctionCall:
        if len(args) != self.arity:
            raise TypeError(f"{self.name}() takes {self.arity} argument(s), got {len(args)}")
        return FunctionCall(function=self, args=tuple(as_expression(a) for a in args))


sin = BuiltinFunction("sin")
cos = BuiltinFunction("cos")
tan = BuiltinFunction("tan")
exp = BuiltinFunction("exp")
log = BuiltinFunction("log")
log10 = BuiltinFunction("log10")
sqrt = BuiltinFunction("sqrt")
rsqrt = BuiltinFunction("rsqrt")
fabs = BuiltinFunction("fabs")
floor = BuiltinFunction("floor")
ceil = BuiltinFunction("ceil")
pow = BuiltinFunction("pow")  # noqa: A001
fmin = BuiltinFunction("fmin")
fmax = BuiltinFunction("fmax")
hypot = BuiltinFunction("hypot")
atan2 = BuiltinFunction("atan2")
