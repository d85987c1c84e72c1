# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tensor Operators

- ConstantFill: Fill a tensor with a constant
- GivenTensorFill: Fill a tensor with given values
- Copy: Copy a tensor
- Cast: Convert the element type of a tensor
"""

import numpy as np

from ..core.context import operator_schema, register_cpu_operator
from ..core.operator import Operator
from ..core.types import to_numpy_dtype
from ..errors import ValidationError

# Integer element types accepted by the "to"/"dtype" arguments
_DATA_TYPE_CODES = {
    1: np.float32,
    2: np.int32,
    3: np.uint8,
    5: np.bool_,
    6: np.uint8,
    7: np.int8,
    10: np.int64,
    12: np.float16,
    13: np.float64,
}


def resolve_dtype(value) -> np.dtype:
    """Resolve a dtype argument given as a type name or an integer code."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"Invalid data type argument: {value!r}", parameter="dtype")
    if isinstance(value, int):
        if value not in _DATA_TYPE_CODES:
            raise ValidationError(f"Unknown data type code {value}", parameter="dtype")
        return np.dtype(_DATA_TYPE_CODES[value])
    try:
        return to_numpy_dtype(value)
    except ValueError as err:
        raise ValidationError(str(err), parameter="dtype") from None


@register_cpu_operator("ConstantFill")
class ConstantFillOp(Operator):
    """
    Fill the output with a constant value.

    The shape comes from the "shape" argument, or from the optional input:
    its values when input_as_shape is set, otherwise its shape.
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._value = self.get_single_argument("value", 0.0)
        self._dtype = resolve_dtype(self.get_single_argument("dtype", "float"))
        self._shape = [int(d) for d in self.get_repeated_argument("shape")]
        self._extra_shape = [int(d) for d in self.get_repeated_argument("extra_shape")]
        self._input_as_shape = bool(self.get_single_argument("input_as_shape", False))
        if self.input_size() == 0 and self._extra_shape:
            raise ValidationError(
                "Cannot set extra_shape when there is no input", parameter="extra_shape"
            )
        if self.input_size() == 1 and self._shape:
            raise ValidationError(
                "Cannot set the shape argument and pass in an input at the same time",
                parameter="shape",
            )

    def run_on_device(self) -> bool:
        if self.input_size() == 0:
            shape = self._shape
        elif self._input_as_shape:
            data = self.input(0).data()
            if data.ndim != 1:
                raise ValidationError("When input_as_shape is true, the input must be a 1D tensor")
            shape = [int(d) for d in data] + self._extra_shape
        else:
            shape = list(self.input(0).shape) + self._extra_shape
        self.output(0).copy_from(np.full(shape, self._value, dtype=self._dtype))
        return True


@register_cpu_operator("GivenTensorFill")
class GivenTensorFillOp(Operator):
    """Fill the output with the "values" argument reshaped to "shape"."""

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        dtype = resolve_dtype(self.get_single_argument("dtype", "float"))
        values = np.asarray(self.get_repeated_argument("values"), dtype=dtype)
        shape = [int(d) for d in self.get_repeated_argument("shape", [values.size])]
        if int(np.prod(shape, dtype=np.int64)) != values.size:
            raise ValidationError(
                f"Shape {shape} does not match {values.size} values",
                parameter="shape",
            )
        self._values = values.reshape(shape)

    def run_on_device(self) -> bool:
        self.output(0).copy_from(self._values)
        return True


@register_cpu_operator("Copy")
class CopyOp(Operator):
    def run_on_device(self) -> bool:
        self.output(0).copy_from(self.input(0).data())
        return True


@register_cpu_operator("Cast")
class CastOp(Operator):
    """Cast the input to the element type named by the "to" argument."""

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        if not self.has_argument("to"):
            raise ValidationError("Argument 'to' is required", parameter="to")
        self._to = resolve_dtype(self.get_single_argument("to"))

    def run_on_device(self) -> bool:
        data = self.input(0).data().astype(self._to)
        output = self.output(0)
        output.resize(*data.shape)
        np.copyto(output.mutable_data(self._to), data)
        return True


operator_schema("ConstantFill") \
    .num_inputs(0, 1) \
    .num_outputs(1) \
    .allow_inplace([(0, 0)]) \
    .arg("value", "Value to fill with") \
    .arg("dtype", "Element type of the output") \
    .arg("shape", "Output shape when there is no input") \
    .arg("extra_shape", "Dimensions appended to the input-derived shape") \
    .arg("input_as_shape", "Read the output shape from the input values") \
    .set_doc("Fill the output tensor with a constant value.")

operator_schema("GivenTensorFill") \
    .num_inputs(0) \
    .num_outputs(1) \
    .arg("values", "Flat list of values") \
    .arg("shape", "Output shape") \
    .set_doc("Fill the output tensor with the given values.")

operator_schema("Copy") \
    .num_inputs(1) \
    .num_outputs(1) \
    .identical_type_and_shape() \
    .set_doc("Copy the input tensor into the output tensor.")

operator_schema("Cast") \
    .num_inputs(1) \
    .num_outputs(1) \
    .allow_inplace([(0, 0)]) \
    .identical_type_and_shape() \
    .arg("to", "Target element type, as a name or an integer code") \
    .set_doc("Convert the element type of the input tensor.")
