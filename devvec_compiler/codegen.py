"""Fused expression kernel code generation.

Generates CUDA C source for a whole vector expression. The kernel signature
and body depend only on the expression shape, never on which buffers or
scalar values are bound at launch time, so one compiled kernel serves every
assignment with the same shape.

Generated layout::

    __device__ ... user functions, each declared once ...
    extern "C" __global__ void <name>(
        unsigned long long n,
        <T> *res,
        const <U> *prm_1,     // vector terminal
        <V> prm_2             // scalar terminal
    )
    {
        for (idx = global id; idx < n; idx += total threads)
            res[idx] = <expression at idx>;
    }
"""

from __future__ import annotations

import hashlib

import numpy as np

from devvec_compiler.expr import (
    ExpressionNode,
    ExpressionVisitor,
    ScalarTerminal,
    UserFunctionCollector,
    collect_terminals,
    expression_shape,
)
from devvec_compiler.kernel_program import KernelParameter, KernelSource
from devvec_compiler.op_support import binary_operator, c_type_name, dtype_token, unary_operator

KERNEL_NAME_PREFIX = "devvec_"
_MAX_READABLE_NAME = 48


class _NameVisitor(ExpressionVisitor):
    """Prefix-order tokens; arities are fixed so the sequence is unambiguous."""

    def __init__(self):
        self.tokens: list[str] = []

    def visit_vector(self, node):
        self.tokens.append("v" + dtype_token(node.dtype))

    def visit_scalar(self, node):
        self.tokens.append("s" + dtype_token(node.dtype))

    def visit_unary(self, node):
        self.tokens.append(node.tag)
        node.operand.accept(self)

    def visit_binary(self, node):
        self.tokens.append(node.tag)
        node.left.accept(self)
        node.right.accept(self)

    def visit_call(self, node):
        self.tokens.append(node.function.name)
        for arg in node.args:
            arg.accept(self)


class _SourceVisitor(ExpressionVisitor):
    """Emits the C expression evaluated at ``idx``.

    Terminals are numbered in the same depth-first order as
    collect_terminals(), which is also the argument binding order.
    """

    def __init__(self):
        self._counter = 0

    def _next_param(self) -> str:
        self._counter += 1
        return f"prm_{self._counter}"

    def visit_vector(self, node):
        return f"{self._next_param()}[idx]"

    def visit_scalar(self, node):
        return self._next_param()

    def visit_unary(self, node):
        return f"({unary_operator(node.tag)}{node.operand.accept(self)})"

    def visit_binary(self, node):
        left = node.left.accept(self)
        right = node.right.accept(self)
        return f"({left} {binary_operator(node.tag)} {right})"

    def visit_call(self, node):
        args = [arg.accept(self) for arg in node.args]
        return f"{node.function.name}({', '.join(args)})"


def kernel_name_for(expr: ExpressionNode, result_dtype) -> str:
    """Kernel name unique to the expression shape and result type."""
    visitor = _NameVisitor()
    expr.accept(visitor)
    has_user_functions = bool(_user_functions(expr))
    name = KERNEL_NAME_PREFIX + "_".join([dtype_token(result_dtype)] + visitor.tokens)
    if len(name) > _MAX_READABLE_NAME or has_user_functions:
        shape = expression_shape(expr, result_dtype)
        name = KERNEL_NAME_PREFIX + hashlib.md5(repr(shape).encode()).hexdigest()[:16]
    return name


def kernel_parameters(expr: ExpressionNode) -> tuple[KernelParameter, ...]:
    params = []
    for i, term in enumerate(collect_terminals(expr), start=1):
        kind = "scalar" if isinstance(term, ScalarTerminal) else "vector"
        params.append(KernelParameter(name=f"prm_{i}", kind=kind, dtype=np.dtype(term.dtype)))
    return tuple(params)


def _user_functions(expr: ExpressionNode) -> list:
    collector = UserFunctionCollector()
    expr.accept(collector)
    return collector.functions


def generate_kernel(expr: ExpressionNode, result_dtype) -> KernelSource:
    """Generate CUDA C source for ``res = expr`` over ``result_dtype`` elements.

    Args:
        expr: Expression tree (vector terminals, scalars, operators, calls).
        result_dtype: Element type of the destination vector.

    Returns:
        KernelSource suitable for NVRTC compilation.
    """
    result_dtype = np.dtype(result_dtype)
    shape = expression_shape(expr, result_dtype)
    kernel_name = kernel_name_for(expr, result_dtype)
    params = kernel_parameters(expr)

    lines: list[str] = []
    for function in _user_functions(expr):
        lines.append(function.declaration())
        lines.append("")

    sig: list[str] = [
        "unsigned long long n",
        f"{c_type_name(result_dtype)} *res",
    ]
    for p in params:
        if p.kind == "vector":
            sig.append(f"const {c_type_name(p.dtype)} *{p.name}")
        else:
            sig.append(f"{c_type_name(p.dtype)} {p.name}")

    lines.append(f'extern "C" __global__ void {kernel_name}(')
    lines.append(",\n".join(f"    {s}" for s in sig))
    lines.append(")")
    lines.append("{")
    lines.append(
        "    for (unsigned long long idx = blockIdx.x * (unsigned long long)blockDim.x + threadIdx.x;"
    )
    lines.append("         idx < n; idx += (unsigned long long)blockDim.x * gridDim.x) {")
    lines.append(f"        res[idx] = {expr.accept(_SourceVisitor())};")
    lines.append("    }")
    lines.append("}")

    return KernelSource(
        kernel_name=kernel_name,
        source_code="\n".join(lines) + "\n",
        shape=shape,
        result_dtype=result_dtype,
        parameters=params,
    )
