# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Activation Operators

- Relu: Rectified Linear Unit
- Sigmoid: Sigmoid activation
- Tanh: Hyperbolic tangent
- Softmax: Softmax normalization over the dimensions from "axis" on
"""

import numpy as np

from ..core.context import operator_schema, register_cpu_operator
from ..core.operator import Operator


class UnaryElementwiseOp(Operator):
    def compute(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def run_on_device(self) -> bool:
        x = self.input(0).data()
        self.output(0).copy_from(self.compute(x).astype(x.dtype, copy=False))
        return True


@register_cpu_operator("Relu")
class ReluOp(UnaryElementwiseOp):
    def compute(self, x):
        return np.maximum(x, 0)


@register_cpu_operator("Sigmoid")
class SigmoidOp(UnaryElementwiseOp):
    def compute(self, x):
        return 1.0 / (1.0 + np.exp(-x))


@register_cpu_operator("Tanh")
class TanhOp(UnaryElementwiseOp):
    def compute(self, x):
        return np.tanh(x)


@register_cpu_operator("Softmax")
class SoftmaxOp(Operator):
    """
    Softmax over the input coerced to 2D: dimensions before "axis" form
    the rows, the remaining ones the columns.
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._axis = int(self.get_single_argument("axis", 1))

    def run_on_device(self) -> bool:
        x = self.input(0).data()
        axis = self._axis if self._axis >= 0 else self._axis + x.ndim
        rows = int(np.prod(x.shape[:axis], dtype=np.int64))
        x2d = x.reshape(rows, -1)
        shifted = np.exp(x2d - x2d.max(axis=1, keepdims=True))
        y = shifted / shifted.sum(axis=1, keepdims=True)
        self.output(0).copy_from(y.reshape(x.shape).astype(x.dtype, copy=False))
        return True


for _op_type, _doc in (
    ("Relu", "Y = max(X, 0), element-wise."),
    ("Sigmoid", "Y = 1 / (1 + exp(-X)), element-wise."),
    ("Tanh", "Y = tanh(X), element-wise."),
):
    operator_schema(_op_type) \
        .num_inputs(1) \
        .num_outputs(1) \
        .allow_inplace([(0, 0)]) \
        .identical_type_and_shape() \
        .set_doc(_doc)

operator_schema("Softmax") \
    .num_inputs(1) \
    .num_outputs(1) \
    .identical_type_and_shape() \
    .arg("axis", "First dimension of the softmax columns") \
    .set_doc("Softmax of the input coerced to a 2D matrix at axis.")
