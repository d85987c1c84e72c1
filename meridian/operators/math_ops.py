# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Math Operators

Implements element-wise and matrix operators:
- Add, Sub, Mul, Div: Element-wise binary ops with optional broadcasting
- Sum: Element-wise sum of any number of inputs
- Scale: Multiply by a constant
- MatMul: Matrix multiplication with optional transposes
- FC: Fully connected layer, Y = X * W^T + b
"""

import numpy as np

from ..core.context import operator_schema, register_cpu_operator
from ..core.operator import Operator
from ..core.schema import OpCost
from ..errors import ValidationError, format_shape_mismatch


def _flatten_to_2d(array: np.ndarray, axis: int) -> np.ndarray:
    if axis < 0:
        axis += array.ndim
    rows = int(np.prod(array.shape[:axis], dtype=np.int64))
    return array.reshape(rows, -1)


class BinaryElementwiseOp(Operator):
    """
    Base class for Add/Sub/Mul/Div.

    Without "broadcast" both inputs must have the same shape. With it, B is
    broadcast over A: B's dimensions line up with A's starting at "axis"
    (default: B is a suffix of A).
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._broadcast = bool(self.get_single_argument("broadcast", False))
        self._axis = int(self.get_single_argument("axis", -1))

    def compute(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _align(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        if not self._broadcast:
            if a.shape != b.shape:
                raise format_shape_mismatch(a.shape, b.shape, self.debug_def().input[1])
            return b
        axis = self._axis if self._axis >= 0 else a.ndim - b.ndim
        if axis < 0 or axis + b.ndim > a.ndim:
            raise ValidationError(
                f"Cannot broadcast {b.shape} over {a.shape} at axis {self._axis}",
                parameter="axis",
            )
        if a.shape[axis:axis + b.ndim] != b.shape:
            raise format_shape_mismatch(
                a.shape[axis:axis + b.ndim], b.shape, self.debug_def().input[1]
            )
        return b.reshape((1,) * axis + b.shape + (1,) * (a.ndim - axis - b.ndim))

    def run_on_device(self) -> bool:
        a = self.input(0).data()
        b = self._align(a, self.input(1).data())
        self.output(0).copy_from(self.compute(a, b))
        return True


@register_cpu_operator("Add")
class AddOp(BinaryElementwiseOp):
    def compute(self, a, b):
        return a + b


@register_cpu_operator("Sub")
class SubOp(BinaryElementwiseOp):
    def compute(self, a, b):
        return a - b


@register_cpu_operator("Mul")
class MulOp(BinaryElementwiseOp):
    def compute(self, a, b):
        return a * b


@register_cpu_operator("Div")
class DivOp(BinaryElementwiseOp):
    def compute(self, a, b):
        return a / b


@register_cpu_operator("Sum")
class SumOp(Operator):
    def run_on_device(self) -> bool:
        result = np.array(self.input(0).data(), copy=True)
        for i in range(1, self.input_size()):
            data = self.input(i).data()
            if data.shape != result.shape:
                raise format_shape_mismatch(
                    result.shape, data.shape, self.debug_def().input[i]
                )
            result += data
        self.output(0).copy_from(result)
        return True


@register_cpu_operator("Scale")
class ScaleOp(Operator):
    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._scale = float(self.get_single_argument("scale", 1.0))

    def run_on_device(self) -> bool:
        data = self.input(0).data()
        self.output(0).copy_from((data * self._scale).astype(data.dtype, copy=False))
        return True


@register_cpu_operator("MatMul")
class MatMulOp(Operator):
    """
    Y = op(A) * op(B), with inputs flattened to 2D at axis_a / axis_b.
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._axis_a = int(self.get_single_argument("axis_a", 1))
        self._axis_b = int(self.get_single_argument("axis_b", 1))
        self._trans_a = bool(self.get_single_argument("trans_a", False))
        self._trans_b = bool(self.get_single_argument("trans_b", False))

    def run_on_device(self) -> bool:
        a = _flatten_to_2d(self.input(0).data(), self._axis_a)
        b = _flatten_to_2d(self.input(1).data(), self._axis_b)
        if self._trans_a:
            a = a.T
        if self._trans_b:
            b = b.T
        if a.shape[1] != b.shape[0]:
            raise ValidationError(
                f"Matrix multiplication dimension mismatch: {a.shape} x {b.shape}",
                parameter="input",
            )
        self.output(0).copy_from(a @ b)
        return True


@register_cpu_operator("FC")
class FullyConnectedOp(Operator):
    """
    Y = X * W^T + b

    X is flattened to [M, K] at "axis", W to [N, K] at "axis_w".
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._axis = int(self.get_single_argument("axis", 1))
        self._axis_w = int(self.get_single_argument("axis_w", 1))

    def run_on_device(self) -> bool:
        x = self.input(0).data()
        w = _flatten_to_2d(self.input(1).data(), self._axis_w)
        b = self.input(2).data()
        x2d = _flatten_to_2d(x, self._axis)
        if x2d.shape[1] != w.shape[1]:
            raise format_shape_mismatch((x2d.shape[0], w.shape[1]), x2d.shape, "X")
        if b.shape != (w.shape[0],):
            raise format_shape_mismatch((w.shape[0],), b.shape, "b")
        axis = self._axis if self._axis >= 0 else self._axis + x.ndim
        y = x2d @ w.T + b
        self.output(0).copy_from(y.reshape(x.shape[:axis] + (w.shape[0],)))
        return True


def _matmul_cost(op_def, shapes):
    a, b = shapes[0], shapes[1]
    m, k = int(np.prod(a[:-1], dtype=np.int64)), a[-1]
    n = b[0] if op_def.arg.get("trans_b") else b[-1]
    itemsize = 4
    return OpCost(
        flops=2 * m * k * n,
        bytes_read=(m * k + k * n) * itemsize,
        bytes_written=m * n * itemsize,
    )


def _fc_cost(op_def, shapes):
    x, w = shapes[0], shapes[1]
    m, k = int(np.prod(x[:-1], dtype=np.int64)), x[-1]
    n = w[0]
    itemsize = 4
    return OpCost(
        flops=2 * m * k * n + m * n,
        bytes_read=(m * k + k * n + n) * itemsize,
        bytes_written=m * n * itemsize,
    )


def _fc_shape(op_def, shapes):
    x, w = shapes[0], shapes[1]
    axis = op_def.arg.get("axis", 1)
    if axis < 0:
        axis += len(x)
    return [tuple(x[:axis]) + (w[0],)]


for _op_type in ("Add", "Sub", "Mul", "Div"):
    operator_schema(_op_type) \
        .num_inputs(2) \
        .num_outputs(1) \
        .allow_inplace([(0, 0), (1, 0)]) \
        .identical_type_and_shape_of_input(0) \
        .arg("broadcast", "Broadcast B over A") \
        .arg("axis", "Dimension of A where B's dimensions start") \
        .set_doc(f"Element-wise {_op_type} of A and B.")

operator_schema("Sum") \
    .num_inputs(1, 2**31 - 1) \
    .num_outputs(1) \
    .allow_inplace([(0, 0)]) \
    .identical_type_and_shape_of_input(0) \
    .set_doc("Element-wise sum of all inputs, which must have the same shape.")

operator_schema("Scale") \
    .num_inputs(1) \
    .num_outputs(1) \
    .allow_inplace([(0, 0)]) \
    .identical_type_and_shape() \
    .arg("scale", "The value to scale by") \
    .set_doc("Multiply the input by a scalar.")

operator_schema("MatMul") \
    .num_inputs(2) \
    .num_outputs(1) \
    .cost_inference_function(_matmul_cost) \
    .arg("axis_a", "Flatten A to 2D at this axis") \
    .arg("axis_b", "Flatten B to 2D at this axis") \
    .arg("trans_a", "Transpose A before multiplying") \
    .arg("trans_b", "Transpose B before multiplying") \
    .set_doc("Matrix multiplication Y = op(A) * op(B).")

operator_schema("FC") \
    .num_inputs(3) \
    .num_outputs(1) \
    .tensor_inference_function(_fc_shape) \
    .cost_inference_function(_fc_cost) \
    .input(0, "X", "Input of shape [M, K]") \
    .input(1, "W", "Weights of shape [N, K]") \
    .input(2, "b", "Bias of shape [N]") \
    .output(0, "Y", "Output of shape [M, N]") \
    .set_doc("Fully connected layer Y = X * W^T + b.")
