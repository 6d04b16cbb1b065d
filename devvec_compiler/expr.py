"""Vector expression AST.

Arithmetic on vectors, scalars and nodes builds a tree lazily; nothing is
computed until the tree is assigned into a vector. The tree is a tagged
variant:

- VectorTerminal: reference to a device vector
- ScalarTerminal: a host scalar passed to the kernel by value
- UnaryOp / BinaryOp: operator tag plus operand node(s)
- FunctionCall: device math builtin or user function applied to nodes
- OperatorProduct: external linear operator times a vector (never compiled,
  split off at assignment time)

All traversals (shape, terminal collection, naming, source emission) are
visitors over this variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np

from devvec_compiler.op_support import dtype_token, is_supported_dtype


@runtime_checkable
class LinearOperator(Protocol):
    """Externally implemented operator usable as ``operator * vector``.

    ``mul_into(x, y, alpha, append)`` must compute ``y = alpha * A * x`` or,
    when ``append`` is true, ``y += alpha * A * x``.
    """

    shape: tuple[int, int]

    def mul_into(self, x: Any, y: Any, alpha: float, append: bool) -> None:
        ...


class ExpressionOps:
    """Operator overloads shared by expression nodes and device vectors."""

    __slots__ = ()

    # Make numpy scalars defer to the reflected operators below.
    __array_ufunc__ = None

    def _to_expression(self) -> ExpressionNode:
        raise NotImplementedError

    def __add__(self, other):
        return _binary("add", self, other)

    def __radd__(self, other):
        return _binary("add", other, self)

    def __sub__(self, other):
        return _binary("sub", self, other)

    def __rsub__(self, other):
        return _binary("sub", other, self)

    def __mul__(self, other):
        return _binary("mul", self, other)

    def __rmul__(self, other):
        return _binary("mul", other, self)

    def __truediv__(self, other):
        return _binary("div", self, other)

    def __rtruediv__(self, other):
        return _binary("div", other, self)

    def __mod__(self, other):
        return _binary("mod", self, other)

    def __rmod__(self, other):
        return _binary("mod", other, self)

    def __and__(self, other):
        return _binary("and", self, other)

    def __rand__(self, other):
        return _binary("and", other, self)

    def __or__(self, other):
        return _binary("or", self, other)

    def __ror__(self, other):
        return _binary("or", other, self)

    def __xor__(self, other):
        return _binary("xor", self, other)

    def __rxor__(self, other):
        return _binary("xor", other, self)

    def __lshift__(self, other):
        return _binary("lshift", self, other)

    def __rlshift__(self, other):
        return _binary("lshift", other, self)

    def __rshift__(self, other):
        return _binary("rshift", self, other)

    def __rrshift__(self, other):
        return _binary("rshift", other, self)

    def __neg__(self):
        return UnaryOp("neg", self._to_expression())

    def __pos__(self):
        return UnaryOp("pos", self._to_expression())

    def __invert__(self):
        return UnaryOp("invert", self._to_expression())


class ExpressionNode(ExpressionOps):
    """Base class of all AST nodes."""

    __slots__ = ()

    def _to_expression(self) -> ExpressionNode:
        return self

    def accept(self, visitor: ExpressionVisitor):
        raise NotImplementedError


@dataclass(frozen=True, eq=False)
class VectorTerminal(ExpressionNode):
    vector: Any

    @property
    def dtype(self) -> np.dtype:
        return self.vector.dtype

    def accept(self, visitor):
        return visitor.visit_vector(self)


@dataclass(frozen=True, eq=False)
class ScalarTerminal(ExpressionNode):
    value: Any
    dtype: np.dtype

    @classmethod
    def from_value(cls, value) -> ScalarTerminal:
        """Wrap a host scalar. Python int -> int64, float -> float64,
        numpy scalars keep their own dtype."""
        if isinstance(value, (bool, np.bool_)):
            raise TypeError("Boolean scalars cannot be used in vector expressions")
        if isinstance(value, np.generic):
            dtype = value.dtype
        elif isinstance(value, int):
            dtype = np.dtype(np.int64)
        elif isinstance(value, float):
            dtype = np.dtype(np.float64)
        else:
            raise TypeError(f"Unsupported scalar type in vector expression: {type(value).__name__}")
        if not is_supported_dtype(dtype):
            raise TypeError(f"Unsupported scalar type in vector expression: {np.dtype(dtype)}")
        return cls(value=value, dtype=np.dtype(dtype))

    def accept(self, visitor):
        return visitor.visit_scalar(self)


@dataclass(frozen=True, eq=False)
class UnaryOp(ExpressionNode):
    tag: str
    operand: ExpressionNode

    def accept(self, visitor):
        return visitor.visit_unary(self)


@dataclass(frozen=True, eq=False)
class BinaryOp(ExpressionNode):
    tag: str
    left: ExpressionNode
    right: ExpressionNode

    def accept(self, visitor):
        return visitor.visit_binary(self)


@dataclass(frozen=True, eq=False)
class FunctionCall(ExpressionNode):
    function: Any  # BuiltinFunction | UserFunction
    args: tuple[ExpressionNode, ...]

    def accept(self, visitor):
        return visitor.visit_call(self)


@dataclass(frozen=True, eq=False)
class OperatorProduct(ExpressionNode):
    operator: LinearOperator
    vector: Any

    def accept(self, visitor):
        return visitor.visit_product(self)


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------


def as_expression(obj) -> ExpressionNode:
    """Lift a vector, node or host scalar into an expression node."""
    if isinstance(obj, ExpressionOps):
        return obj._to_expression()
    return ScalarTerminal.from_value(obj)


def _is_operator(obj) -> bool:
    return not isinstance(obj, ExpressionOps) and callable(getattr(obj, "mul_into", None))


def _binary(tag: str, left, right):
    if tag == "mul" and _is_operator(left):
        if not isinstance(right, ExpressionOps) or not isinstance(right._to_expression(), VectorTerminal):
            raise TypeError("A linear operator can only multiply a device vector")
        return OperatorProduct(operator=left, vector=right._to_expression().vector)
    try:
        lhs = as_expression(left)
        rhs = as_expression(right)
    except TypeError:
        return NotImplemented
    return BinaryOp(tag, lhs, rhs)


# ---------------------------------------------------------------------------
# Visitors
# ---------------------------------------------------------------------------


class ExpressionVisitor:
    def visit_vector(self, node: VectorTerminal):
        raise NotImplementedError

    def visit_scalar(self, node: ScalarTerminal):
        raise NotImplementedError

    def visit_unary(self, node: UnaryOp):
        raise NotImplementedError

    def visit_binary(self, node: BinaryOp):
        raise NotImplementedError

    def visit_call(self, node: FunctionCall):
        raise NotImplementedError

    def visit_product(self, node: OperatorProduct):
        raise TypeError(
            "Operator products may only be added to or subtracted from the "
            "top level of an assignment"
        )


class ShapeVisitor(ExpressionVisitor):
    """Structural key of a tree: tags and terminal kinds, no identities."""

    def visit_vector(self, node):
        return ("vector", dtype_token(node.dtype))

    def visit_scalar(self, node):
        return ("scalar", dtype_token(node.dtype))

    def visit_unary(self, node):
        return ("unary", node.tag, node.operand.accept(self))

    def visit_binary(self, node):
        return ("binary", node.tag, node.left.accept(self), node.right.accept(self))

    def visit_call(self, node):
        return ("call", node.function.key) + tuple(arg.accept(self) for arg in node.args)


class TerminalCollector(ExpressionVisitor):
    """Terminals in depth-first, left-to-right order (one per occurrence)."""

    def __init__(self):
        self.terminals: list[VectorTerminal | ScalarTerminal] = []

    def visit_vector(self, node):
        self.terminals.append(node)

    def visit_scalar(self, node):
        self.terminals.append(node)

    def visit_unary(self, node):
        node.operand.accept(self)

    def visit_binary(self, node):
        node.left.accept(self)
        node.right.accept(self)

    def visit_call(self, node):
        for arg in node.args:
            arg.accept(self)


class UserFunctionCollector(ExpressionVisitor):
    """Distinct user functions referenced by a tree, first use first."""

    def __init__(self):
        self.functions: list = []
        self._seen: set = set()

    def visit_vector(self, node):
        pass

    def visit_scalar(self, node):
        pass

    def visit_unary(self, node):
        node.operand.accept(self)

    def visit_binary(self, node):
        node.left.accept(self)
        node.right.accept(self)

    def visit_call(self, node):
        for arg in node.args:
            arg.accept(self)
        if node.function.declaration() is not None and node.function.key not in self._seen:
            self._seen.add(node.function.key)
            self.functions.append(node.function)


def expression_shape(expr: ExpressionNode, result_dtype=None) -> tuple:
    """Hashable shape of ``expr``; includes the result type when given."""
    shape = expr.accept(ShapeVisitor())
    if result_dtype is None:
        return shape
    return ("result", dtype_token(result_dtype), shape)


def collect_terminals(expr: ExpressionNode) -> list[VectorTerminal | ScalarTerminal]:
    collector = TerminalCollector()
    expr.accept(collector)
    return collector.terminals


def collect_vectors(expr: ExpressionNode) -> list:
    return [t.vector for t in collect_terminals(expr) if isinstance(t, VectorTerminal)]


def split_operator_products(
    expr: ExpressionNode,
) -> tuple[ExpressionNode | None, list[tuple[float, OperatorProduct]]]:
    """Split ``rest +/- A*x +/- B*y`` into the kernel part and the products.

    A leading product is also split off, so ``A*x - rest`` gives
    (-rest, [(1, A*x)]).

    Returns (rest or None, [(sign, product), ...]). Products buried anywhere
    else in the tree are left in place and rejected when the kernel is built.
    """
    if isinstance(expr, OperatorProduct):
        return None, [(1.0, expr)]
    if isinstance(expr, BinaryOp) and expr.tag in ("add", "sub"):
        if isinstance(expr.right, OperatorProduct):
            rest, products = split_operator_products(expr.left)
            sign = 1.0 if expr.tag == "add" else -1.0
            return rest, products + [(sign, expr.right)]
        if isinstance(expr.left, OperatorProduct):
            rest, products = split_operator_products(expr.right)
            if expr.tag == "sub":
                # A*x - (rest +/- B*y) == -rest -/+ B*y + A*x
                rest = UnaryOp("neg", rest) if rest is not None else None
                products = [(-sign, p) for sign, p in products]
            return rest, [(1.0, expr.left)] + products
    return expr, []
