# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Convolution Operators

Conv over NCHW inputs via im2col + GEMM.

The column buffer is owned by the operator instance unless the
"shared_buffer" argument (or the force_shared_col_buffer knob) is set, in
which case every convolution of the workspace tree shares one buffer
stored in the workspace and serialized by a lock stored next to it.
"""

import threading
from typing import Sequence

import numpy as np

from ..core.context import operator_schema, register_cpu_operator
from ..core.operator import Operator
from ..core.schema import OpCost
from ..core.tensor import Tensor
from ..errors import ValidationError, format_shape_mismatch

SHARED_COL_BUFFER = "__MERIDIAN_SHARED_CONV_BUFFER_CPU__"
SHARED_COL_BUFFER_MUTEX = "__MERIDIAN_SHARED_CONV_BUFFER_CPU_MUTEX__"

_create_lock = threading.Lock()


def create_shared_buffer(ws) -> None:
    """Create the shared column buffer and its lock in ws."""
    with _create_lock:
        ws.create_blob(SHARED_COL_BUFFER).get_mutable(Tensor)
        mutex_blob = ws.create_blob(SHARED_COL_BUFFER_MUTEX)
        if mutex_blob.is_empty:
            mutex_blob.reset(threading.Lock())


def run_with_shared_buffer(ws, fn) -> None:
    """Call fn with the shared column buffer while holding its lock."""
    mutex = ws.get_blob(SHARED_COL_BUFFER_MUTEX).get()
    with mutex:
        fn(ws.get_blob(SHARED_COL_BUFFER).get(Tensor))


def _pair(values: Sequence[int], name: str):
    if len(values) == 1:
        return int(values[0]), int(values[0])
    if len(values) != 2:
        raise ValidationError(f"Argument {name} must have 1 or 2 values", parameter=name)
    return int(values[0]), int(values[1])


def im2col(
    image: np.ndarray,
    kernel: tuple,
    stride: tuple,
    pads: tuple,
    dilation: tuple,
    out_hw: tuple,
    col: np.ndarray,
) -> None:
    """
    Unfold image [C, H, W] into col [C * kh * kw, out_h * out_w].
    """
    channels = image.shape[0]
    kh, kw = kernel
    pad_t, pad_l, pad_b, pad_r = pads
    out_h, out_w = out_hw
    padded = np.pad(image, ((0, 0), (pad_t, pad_b), (pad_l, pad_r)))
    cols = col.reshape(channels, kh, kw, out_h, out_w)
    for i in range(kh):
        h0 = i * dilation[0]
        h1 = h0 + stride[0] * (out_h - 1) + 1
        for j in range(kw):
            w0 = j * dilation[1]
            w1 = w0 + stride[1] * (out_w - 1) + 1
            cols[:, i, j] = padded[:, h0:h1:stride[0], w0:w1:stride[1]]


@register_cpu_operator("Conv")
class ConvOp(Operator):
    """
    2D convolution, NCHW.

    Inputs: X [N, C, H, W], filter [M, C / group, kh, kw], optional bias [M].
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        order = self.get_single_argument("order", "NCHW")
        if order != "NCHW":
            raise ValidationError(f"Unsupported storage order {order}", parameter="order")
        self._stride = _pair(self._repeated_or_single("strides", "stride", 1), "stride")
        self._dilation = _pair(
            self._repeated_or_single("dilations", "dilation", 1), "dilation"
        )
        pads = self._repeated_or_single("pads", "pad", 0)
        if len(pads) == 1:
            pads = pads * 4
        if len(pads) != 4:
            raise ValidationError("pads must have 4 values (t, l, b, r)", parameter="pads")
        self._pads = tuple(int(p) for p in pads)
        self._group = int(self.get_single_argument("group", 1))
        self._kernel = None
        if self.has_argument("kernel") or self.has_argument("kernels"):
            self._kernel = _pair(self._repeated_or_single("kernels", "kernel", 0), "kernel")

        self._shared_buffer = (
            ws.context.config.force_shared_col_buffer
            or bool(self.get_single_argument("shared_buffer", False))
        )
        if self._shared_buffer:
            create_shared_buffer(ws)
        self._col_buffer = Tensor()

    def _repeated_or_single(self, repeated: str, single: str, default: int) -> list:
        if self.has_argument(repeated):
            return self.get_repeated_argument(repeated)
        return [self.get_single_argument(single, default)]

    def _output_size(self, in_size: int, kernel: int, axis: int) -> int:
        pad = self._pads[axis] + self._pads[axis + 2]
        extent = self._dilation[axis] * (kernel - 1) + 1
        return (in_size + pad - extent) // self._stride[axis] + 1

    def run_on_device(self) -> bool:
        x = self.input(0).data()
        w = self.input(1).data()
        if x.ndim != 4 or w.ndim != 4:
            raise ValidationError("Conv expects 4D input and filter", parameter="ndim")
        n, c, h, width = x.shape
        m, c_per_group, kh, kw = w.shape
        if self._kernel is not None and self._kernel != (kh, kw):
            raise format_shape_mismatch(self._kernel, (kh, kw), "kernel")
        group = self._group
        if c != c_per_group * group or m % group != 0:
            raise ValidationError(
                f"Channel mismatch: input has {c} channels, filter expects "
                f"{c_per_group} x {group} groups",
                parameter="filter",
            )
        out_h = self._output_size(h, kh, 0)
        out_w = self._output_size(width, kw, 1)
        if out_h <= 0 or out_w <= 0:
            raise ValidationError("Conv output would be empty", parameter="kernel")

        bias = self.input(2).data() if self.input_size() == 3 else None
        if bias is not None and bias.shape != (m,):
            raise format_shape_mismatch((m,), bias.shape, "bias")

        m_per_group = m // group
        col_rows = c_per_group * kh * kw
        weights = w.reshape(group, m_per_group, col_rows)
        y = np.empty((n, m, out_h * out_w), dtype=np.result_type(x, w))

        def compute(col_buffer: Tensor) -> None:
            col_buffer.resize(col_rows, out_h * out_w)
            col = col_buffer.mutable_data(x.dtype)
            for image in range(n):
                for g in range(group):
                    channels = slice(g * c_per_group, (g + 1) * c_per_group)
                    im2col(
                        x[image, channels], (kh, kw), self._stride, self._pads,
                        self._dilation, (out_h, out_w), col,
                    )
                    y[image, g * m_per_group:(g + 1) * m_per_group] = weights[g] @ col

        if self._shared_buffer:
            run_with_shared_buffer(self.ws, compute)
        else:
            compute(self._col_buffer)

        if bias is not None:
            y += bias.reshape(1, m, 1)
        self.output(0).copy_from(y.reshape(n, m, out_h, out_w))
        return True


def _conv_cost(op_def, shapes):
    x, w = shapes[0], shapes[1]
    n = x[0]
    m, c_per_group, kh, kw = w
    out_pixels = x[2] * x[3]
    itemsize = 4
    return OpCost(
        flops=2 * n * m * c_per_group * kh * kw * out_pixels,
        bytes_read=(int(np.prod(x)) + int(np.prod(w))) * itemsize,
        bytes_written=n * m * out_pixels * itemsize,
    )


operator_schema("Conv") \
    .num_inputs(2, 3) \
    .num_outputs(1) \
    .cost_inference_function(_conv_cost) \
    .input(0, "X", "Input of shape [N, C, H, W]") \
    .input(1, "filter", "Filter of shape [M, C / group, kh, kw]") \
    .input(2, "bias", "Optional bias of shape [M]") \
    .output(0, "Y", "Output of shape [N, M, out_h, out_w]") \
    .arg("stride", "Stride (or strides for [h, w])") \
    .arg("pad", "Padding on every side (or pads for [t, l, b, r])") \
    .arg("dilation", "Dilation (or dilations for [h, w])") \
    .arg("group", "Number of channel groups") \
    .arg("shared_buffer", "Share the column buffer across the workspace") \
    .set_doc("2D convolution over NCHW inputs.")
