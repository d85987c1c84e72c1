# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
CPU Operator Implementations

Importing this package registers the operators and their schemas into
the default DispatchContext. Use DispatchContext.fork() to get an
isolated context that includes them.

Operators are organized by category:
- tensor_ops: ConstantFill, GivenTensorFill, Copy, Cast
- math_ops: Add, Sub, Mul, Div, Sum, Scale, MatMul, FC
- activation_ops: Relu, Sigmoid, Tanh, Softmax
- conv_ops: Conv
- recurrent_network_op: RecurrentNetwork, rnn_internal_apply_link
"""

# Import all operator modules to register them
from . import tensor_ops
from . import math_ops
from . import activation_ops
from . import conv_ops
from . import recurrent_network_op

__all__ = [
    "tensor_ops",
    "math_ops",
    "activation_ops",
    "conv_ops",
    "recurrent_network_op",
]
