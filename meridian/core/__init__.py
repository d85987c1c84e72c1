# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""Meridian Core Module"""

from .types import (
    DeviceType,
    DeviceOption,
    DataType,
    device_type_name,
    to_numpy_dtype,
    ArgumentValue,
    ArgumentMap,
)
from .defs import OperatorDef, NetDef, parse_net_def
from .tensor import Tensor
from .blob import Blob
from .schema import OpSchema, OpSchemaRegistry, OpCost
from .registry import (
    DEFAULT_ENGINE,
    op_registry_key,
    OperatorRegistry,
    DeviceRegistry,
    EnginePreferences,
    NetTypeRegistry,
)
from .context import (
    DispatchContext,
    get_default_context,
    register_operator,
    register_cpu_operator,
    register_cuda_operator,
    operator_schema,
    register_net_type,
    set_per_op_engine_pref,
    set_global_engine_pref,
    set_engine_pref,
    set_op_engine_pref,
)
from .operator import (
    OperatorBase,
    Operator,
    ConstructionStatus,
    ConstructionResult,
    create_operator,
    UNSET_NET_POSITION,
)
from .workspace import Workspace, StopOnSignal
from .net import NetBase, SimpleNet, AsyncSimpleNet, DAGNet, create_net

__all__ = [
    "DeviceType",
    "DeviceOption",
    "DataType",
    "device_type_name",
    "to_numpy_dtype",
    "ArgumentValue",
    "ArgumentMap",
    "OperatorDef",
    "NetDef",
    "parse_net_def",
    "Tensor",
    "Blob",
    "OpSchema",
    "OpSchemaRegistry",
    "OpCost",
    "DEFAULT_ENGINE",
    "op_registry_key",
    "OperatorRegistry",
    "DeviceRegistry",
    "EnginePreferences",
    "NetTypeRegistry",
    "DispatchContext",
    "get_default_context",
    "register_operator",
    "register_cpu_operator",
    "register_cuda_operator",
    "operator_schema",
    "register_net_type",
    "set_per_op_engine_pref",
    "set_global_engine_pref",
    "set_engine_pref",
    "set_op_engine_pref",
    "OperatorBase",
    "Operator",
    "ConstructionStatus",
    "ConstructionResult",
    "create_operator",
    "UNSET_NET_POSITION",
    "Workspace",
    "StopOnSignal",
    "NetBase",
    "SimpleNet",
    "AsyncSimpleNet",
    "DAGNet",
    "create_net",
]
