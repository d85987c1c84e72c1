# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Meridian: Computation-Graph Execution Engine

Operators registered per device type and engine, dispatched from graph
definitions, composed into nets and run against workspaces of named blobs.

Example:
    import numpy as np
    from meridian import NetDef, Tensor, Workspace

    ws = Workspace()
    ws.create_blob("x").get_mutable(Tensor).copy_from(np.array([-1.0, 2.0]))

    net = NetDef(name="relu_net", external_input=["x"], external_output=["y"])
    net.add_op("Relu", ["x"], ["y"])
    ws.create_net(net)
    ws.run_net("relu_net")
"""

__version__ = "0.1.0"
__author__ = "Wahyu Ardiansyah"

from .core import (
    DeviceType,
    DeviceOption,
    DataType,
    OperatorDef,
    NetDef,
    parse_net_def,
    Tensor,
    Blob,
    OpSchema,
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
    OperatorBase,
    Operator,
    create_operator,
    Workspace,
    StopOnSignal,
    NetBase,
    create_net,
)

# Registers the CPU kernel set into the default context
from . import operators

from .config import EngineConfig

# Observability
from .observability import set_verbosity, Verbosity

# Errors
from .errors import (
    MeridianError,
    ConfigurationError,
    SchemaError,
    UnsupportedOperatorFeature,
    OperatorCreationError,
    NetConstructionError,
    ValidationError,
)

__all__ = [
    "__version__",
    "DeviceType",
    "DeviceOption",
    "DataType",
    "OperatorDef",
    "NetDef",
    "parse_net_def",
    "Tensor",
    "Blob",
    "OpSchema",
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
    "create_operator",
    "Workspace",
    "StopOnSignal",
    "NetBase",
    "create_net",
    "operators",
    "EngineConfig",
    "set_verbosity",
    "Verbosity",
    "MeridianError",
    "ConfigurationError",
    "SchemaError",
    "UnsupportedOperatorFeature",
    "OperatorCreationError",
    "NetConstructionError",
    "ValidationError",
]
