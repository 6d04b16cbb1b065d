"""Vector expression compiler: expression trees to fused CUDA kernels.

Entry point: generate_kernel(expr, result_dtype) -> KernelSource

Every distinct expression shape becomes exactly one kernel that evaluates the
whole tree per element in a grid-stride loop, so no intermediate vectors are
materialized. Building and caching the kernel is the runtime's job.
"""

from __future__ import annotations

from devvec_compiler.codegen import generate_kernel as generate_kernel
from devvec_compiler.codegen import kernel_name_for as kernel_name_for
from devvec_compiler.expr import BinaryOp as BinaryOp
from devvec_compiler.expr import ExpressionNode as ExpressionNode
from devvec_compiler.expr import FunctionCall as FunctionCall
from devvec_compiler.expr import LinearOperator as LinearOperator
from devvec_compiler.expr import OperatorProduct as OperatorProduct
from devvec_compiler.expr import ScalarTerminal as ScalarTerminal
from devvec_compiler.expr import UnaryOp as UnaryOp
from devvec_compiler.expr import VectorTerminal as VectorTerminal
from devvec_compiler.expr import as_expression as as_expression
from devvec_compiler.expr import collect_terminals as collect_terminals
from devvec_compiler.expr import expression_shape as expression_shape
from devvec_compiler.functions import BuiltinFunction as BuiltinFunction
from devvec_compiler.functions import UserFunction as UserFunction
from devvec_compiler.kernel_program import CompiledKernel as CompiledKernel
from devvec_compiler.kernel_program import KernelSource as KernelSource
