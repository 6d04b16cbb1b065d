"""Tests for expression tree construction and structural visitors."""

import numpy as np
import pytest

from devvec_compiler import functions as F
from devvec_compiler.expr import (
    BinaryOp,
    FunctionCall,
    OperatorProduct,
    ScalarTerminal,
    UnaryOp,
    VectorTerminal,
    as_expression,
    collect_terminals,
    collect_vectors,
    expression_shape,
    split_operator_products,
)
from devvec_compiler.functions import UserFunction
from devvec_compiler.op_support import (
    OpCategory,
    binary_operator,
    builtin_arity,
    c_type_name,
    classify_op,
    dtype_token,
    get_builtin_functions,
    is_supported_dtype,
    unary_operator,
)
from devvec_runtime.vector import LogicalVector
from tests.conftest import NumpyDevice


class DiagonalOperator:
    """y = alpha * diag(d) * x (+ y), computed on the host."""

    def __init__(self, diag):
        self.diag = np.asarray(diag)
        self.shape = (self.diag.size, self.diag.size)

    def mul_into(self, x, y, alpha, append):
        result = alpha * self.diag * x.to_numpy()
        if append:
            result = result + y.to_numpy()
        y.write_data(0, y.size, result)


@pytest.fixture
def vectors(session):
    device = NumpyDevice()
    a = LogicalVector([device], 8, dtype=np.float32, session=session)
    b = LogicalVector([device], 8, dtype=np.float32, session=session)
    c = LogicalVector([device], 8, dtype=np.int32, session=session)
    return a, b, c


# ---------------------------------------------------------------------------
# 1. Op support tables
# ---------------------------------------------------------------------------


class TestOpSupport:
    def test_classify(self):
        assert classify_op("add") is OpCategory.BINARY
        assert classify_op("invert") is OpCategory.UNARY
        assert classify_op("hypot") is OpCategory.FUNCTION
        with pytest.raises(KeyError):
            classify_op("matmul")

    def test_module_builtins_match_table(self):
        names = {
            name for name in dir(F)
            if isinstance(getattr(F, name), F.BuiltinFunction)
        }
        assert names == get_builtin_functions()

    def test_dtypes(self):
        assert c_type_name(np.float32) == "float"
        assert c_type_name("int64") == "long long"
        assert dtype_token(np.float64) == "f8"
        assert dtype_token(np.uint8) == "u1"
        assert is_supported_dtype(np.int16)
        assert not is_supported_dtype(np.complex64)
        with pytest.raises(TypeError):
            c_type_name(np.float16)

    def test_operator_lookup_checks_category(self):
        assert binary_operator("lshift") == "<<"
        assert unary_operator("invert") == "~"
        assert builtin_arity("atan2") == 2
        with pytest.raises(KeyError, match="unary"):
            binary_operator("neg")
        with pytest.raises(KeyError, match="binary"):
            unary_operator("mul")
        with pytest.raises(KeyError):
            builtin_arity("add")

    def test_unknown_builtin_name_rejected(self):
        with pytest.raises(ValueError, match="not a builtin"):
            F.BuiltinFunction("erfcinv")

    def test_unsupported_dtype_rejected_by_vector_and_scalar(self):
        with pytest.raises(TypeError, match="float16"):
            LogicalVector([NumpyDevice()], 4, dtype=np.float16)
        with pytest.raises(TypeError, match="complex64"):
            ScalarTerminal.from_value(np.complex64(1 + 2j))


# ---------------------------------------------------------------------------
# 2. Tree construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_vector_arithmetic_builds_tree(self, vectors):
        a, b, _ = vectors
        expr = a + b
        assert isinstance(expr, BinaryOp)
        assert expr.tag == "add"
        assert isinstance(expr.left, VectorTerminal) and expr.left.vector is a
        assert expr.right.vector is b

    def test_scalar_lifting(self, vectors):
        a, _, _ = vectors
        expr = 2 * a
        assert isinstance(expr.left, ScalarTerminal)
        assert expr.left.dtype == np.int64
        expr = a / 2.5
        assert expr.right.dtype == np.float64
        expr = np.float32(3) - a
        assert expr.tag == "sub"
        assert expr.left.dtype == np.float32

    def test_unary(self, vectors):
        a, _, c = vectors
        assert isinstance(-a, UnaryOp) and (-a).tag == "neg"
        assert (~c).tag == "invert"
        assert (+a).tag == "pos"

    def test_bitwise(self, vectors):
        _, _, c = vectors
        assert ((c & 3) | (c << 1)).tag == "or"
        assert (c ^ c).tag == "xor"
        assert (c >> 2).tag == "rshift"

    def test_nested_composition(self, vectors):
        a, b, _ = vectors
        expr = F.sqrt(a * a + b * b) - 1.0
        assert isinstance(expr.left, FunctionCall)
        assert expr.left.function.name == "sqrt"

    def test_bool_scalar_rejected(self, vectors):
        a, _, _ = vectors
        with pytest.raises(TypeError):
            a + True

    def test_unsupported_operand_rejected(self, vectors):
        a, _, _ = vectors
        with pytest.raises(TypeError):
            a + "x"

    def test_function_arity_checked(self, vectors):
        a, b, _ = vectors
        with pytest.raises(TypeError):
            F.sin(a, b)
        with pytest.raises(TypeError):
            F.pow(a)

    def test_as_expression(self, vectors):
        a, _, _ = vectors
        assert isinstance(as_expression(a), VectorTerminal)
        assert isinstance(as_expression(3), ScalarTerminal)
        node = a + 1
        assert as_expression(node) is node


# ---------------------------------------------------------------------------
# 3. Shape and terminals
# ---------------------------------------------------------------------------


class TestShape:
    def test_same_shape_for_different_operands(self, vectors):
        a, b, _ = vectors
        assert expression_shape(a + b) == expression_shape(b + a)
        assert expression_shape(a + 2.0) == expression_shape(b + 7.5)

    def test_shape_distinguishes_ops(self, vectors):
        a, b, _ = vectors
        assert expression_shape(a + b) != expression_shape(a * b)

    def test_shape_distinguishes_dtypes(self, vectors):
        a, _, c = vectors
        assert expression_shape(a + a) != expression_shape(c + c)
        assert expression_shape(a + 1) != expression_shape(a + 1.0)

    def test_shape_includes_result_type(self, vectors):
        a, b, _ = vectors
        assert expression_shape(a + b, np.float32) != expression_shape(a + b, np.float64)

    def test_repeated_vector_counts_twice(self, vectors):
        a, b, _ = vectors
        terms = collect_terminals(a * b + a)
        assert [t.vector for t in terms] == [a, b, a]
        assert collect_vectors(a * b + a) == [a, b, a]

    def test_terminal_order_depth_first(self, vectors):
        a, b, _ = vectors
        expr = F.fmax(a, 2.0) * (b - 3)
        kinds = [type(t).__name__ for t in collect_terminals(expr)]
        assert kinds == ["VectorTerminal", "ScalarTerminal", "VectorTerminal", "ScalarTerminal"]

    def test_user_function_body_in_shape(self, vectors):
        a, _, _ = vectors
        f1 = UserFunction("f", "float32", [("x", "float32")], "return x;")
        f2 = UserFunction("f", "float32", [("x", "float32")], "return 2 * x;")
        assert expression_shape(f1(a)) != expression_shape(f2(a))


# ---------------------------------------------------------------------------
# 4. Operator products
# ---------------------------------------------------------------------------


class TestOperatorProducts:
    def test_operator_times_vector(self, vectors):
        a, _, _ = vectors
        op = DiagonalOperator(np.ones(8))
        expr = op * a
        assert isinstance(expr, OperatorProduct)
        assert expr.vector is a

    def test_operator_needs_vector(self, vectors):
        a, b, _ = vectors
        op = DiagonalOperator(np.ones(8))
        with pytest.raises(TypeError):
            op * (a + b)

    def test_split_top_level_terms(self, vectors):
        a, b, _ = vectors
        op = DiagonalOperator(np.ones(8))
        rest, products = split_operator_products(a + b - op * a + op * b)
        assert expression_shape(rest) == expression_shape(a + b)
        assert [sign for sign, _ in products] == [-1.0, 1.0]

    def test_split_leading_product(self, vectors):
        a, _, _ = vectors
        op = DiagonalOperator(np.ones(8))
        rest, products = split_operator_products(op * a + 2 * a)
        assert isinstance(rest, BinaryOp) and rest.tag == "mul"
        assert [sign for sign, _ in products] == [1.0]

    def test_split_leading_product_under_subtraction(self, vectors):
        a, b, _ = vectors
        op = DiagonalOperator(np.ones(8))
        rest, products = split_operator_products(op * a - 2 * a)
        assert isinstance(rest, UnaryOp) and rest.tag == "neg"
        assert expression_shape(rest.operand) == expression_shape(2 * a)
        assert [sign for sign, _ in products] == [1.0]
        rest, products = split_operator_products(op * a - (b + op * b))
        assert rest.tag == "neg"
        assert [sign for sign, _ in products] == [1.0, -1.0]

    def test_product_alone(self, vectors):
        a, _, _ = vectors
        op = DiagonalOperator(np.ones(8))
        rest, products = split_operator_products(op * a)
        assert rest is None
        assert len(products) == 1

    def test_nested_product_rejected(self, vectors):
        a, _, _ = vectors
        op = DiagonalOperator(np.ones(8))
        with pytest.raises(TypeError, match="top level"):
            expression_shape(2 * (op * a))
