# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Meridian Core Types

Device placement and element types shared by definitions, tensors and
the operator registries.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Union

import numpy as np


class DeviceType(IntEnum):
    """Device types an operator can be registered for."""

    CPU = 0
    CUDA = 1
    MKLDNN = 2
    HIP = 6


def device_type_name(device_type: int) -> str:
    """Get the printable name of a device type."""
    try:
        return DeviceType(device_type).name
    except ValueError:
        return f"UNKNOWN({device_type})"


@dataclass
class DeviceOption:
    """Placement of an operator or a net."""

    device_type: DeviceType = DeviceType.CPU
    device_id: int = 0

    def to_dict(self) -> dict:
        return {"device_type": int(self.device_type), "device_id": self.device_id}

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceOption":
        return cls(
            device_type=DeviceType(data.get("device_type", DeviceType.CPU)),
            device_id=data.get("device_id", 0),
        )


class DataType(Enum):
    """Supported tensor element types."""

    Float32 = "float"
    Float16 = "float16"
    Float64 = "double"
    Int32 = "int32"
    Int64 = "int64"
    Int8 = "int8"
    UInt8 = "uint8"
    Bool = "bool"


_NUMPY_DTYPES = {
    DataType.Float32: np.float32,
    DataType.Float16: np.float16,
    DataType.Float64: np.float64,
    DataType.Int32: np.int32,
    DataType.Int64: np.int64,
    DataType.Int8: np.int8,
    DataType.UInt8: np.uint8,
    DataType.Bool: np.bool_,
}


def to_numpy_dtype(dtype: Union[DataType, str]) -> np.dtype:
    """
    Resolve a DataType (or its name, case-insensitive) to a numpy dtype.

    Raises:
        ValueError: If the name is not a known data type.
    """
    if isinstance(dtype, str):
        wanted = dtype.lower()
        for member in DataType:
            if wanted in (member.value, member.name.lower()):
                dtype = member
                break
        else:
            raise ValueError(f"Unknown data type '{dtype}'")
    return np.dtype(_NUMPY_DTYPES[dtype])


# Argument value types
ArgumentValue = Union[int, float, str, bool, list, Any]
ArgumentMap = dict[str, ArgumentValue]
