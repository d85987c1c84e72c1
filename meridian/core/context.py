# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Dispatch Context

DispatchContext owns every table dispatch consults: device registries,
schemas, engine preferences, net types and the engine config. It is
threaded explicitly through workspaces; the process-wide default instance
exists only for import-time registration and for workspaces created
without an explicit context.

Example:
    from meridian.core.context import register_cpu_operator, operator_schema

    @register_cpu_operator("MyOp")
    class MyOp(Operator):
        def run_on_device(self):
            ...

    operator_schema("MyOp").num_inputs(1).num_outputs(1)
"""

import threading
from typing import Callable, Dict, List, Optional, TypeVar

from ..config import EngineConfig
from .registry import (
    DeviceRegistry,
    EnginePreferences,
    GlobalEnginePrefType,
    NetTypeRegistry,
    PerOpEnginePrefType,
    op_registry_key,
)
from .schema import OpSchema, OpSchemaRegistry
from .types import DeviceType

T = TypeVar("T")


class DispatchContext:
    """
    Explicit owner of the registries used by operator dispatch.

    Attributes:
        config: Engine configuration knobs.
        devices: Device type -> operator registry.
        schemas: Operator schemas.
        engine_prefs: Per-op and global engine preferences.
        net_types: Net type name -> net factory.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config if config is not None else EngineConfig.from_env()
        self.devices = DeviceRegistry()
        self.devices.register_device_type(DeviceType.CPU)
        self.devices.register_device_type(DeviceType.CUDA)
        self.schemas = OpSchemaRegistry()
        self.engine_prefs = EnginePreferences(self.devices)
        self.net_types = NetTypeRegistry()

        from .net import register_builtin_net_types

        register_builtin_net_types(self.net_types)

    def register_operator(
        self,
        op_type: str,
        factory: Callable,
        device_type: DeviceType = DeviceType.CPU,
        engine: str = "",
    ) -> None:
        self.devices.get(device_type).register(op_registry_key(op_type, engine), factory)

    def new_schema(self, op_type: str) -> OpSchema:
        return self.schemas.new_schema(op_type)

    def fork(self, config: Optional[EngineConfig] = None) -> "DispatchContext":
        """
        Create an independent context holding the same registrations.

        Registrations and preference changes made on the fork do not
        affect this context.

        Args:
            config: Config of the fork (default: this context's).
        """
        forked = DispatchContext(config=config if config is not None else self.config)
        for device_type in self.devices.device_types():
            source = self.devices.get(device_type)
            target = forked.devices.register_device_type(device_type)
            for key in source.keys():
                target.register(key, source.get(key))
        for op_type in self.schemas.keys():
            forked.schemas.add(self.schemas.schema(op_type))
        for net_type in self.net_types.keys():
            if net_type not in forked.net_types:
                forked.net_types.register(net_type, self.net_types.get(net_type))
        forked.engine_prefs.set_engine_pref(
            self.engine_prefs.per_op_engine_pref(),
            self.engine_prefs.global_engine_pref(),
        )
        return forked

    def __repr__(self) -> str:
        return (
            f"DispatchContext(devices={[d.name for d in self.devices.device_types()]}, "
            f"schemas={len(self.schemas)}, net_types={self.net_types.keys()})"
        )


_default_context: Optional[DispatchContext] = None
_default_lock = threading.Lock()


def get_default_context() -> DispatchContext:
    """Get or create the process-wide DispatchContext."""
    global _default_context
    if _default_context is None:
        with _default_lock:
            if _default_context is None:
                _default_context = DispatchContext()
    return _default_context


def register_operator(
    op_type: str,
    device_type: DeviceType = DeviceType.CPU,
    engine: str = "",
    context: Optional[DispatchContext] = None,
) -> Callable[[T], T]:
    """
    Decorator registering an operator class (or factory).

    Args:
        op_type: Operator type name.
        device_type: Device the implementation runs on.
        engine: Engine name; empty for the default implementation.
        context: Target context (default: the process-wide one).
    """

    def decorator(factory: T) -> T:
        ctx = context if context is not None else get_default_context()
        ctx.register_operator(op_type, factory, device_type, engine)
        return factory

    return decorator


def register_cpu_operator(
    op_type: str, engine: str = "", context: Optional[DispatchContext] = None
) -> Callable[[T], T]:
    return register_operator(op_type, DeviceType.CPU, engine, context)


def register_cuda_operator(
    op_type: str, engine: str = "", context: Optional[DispatchContext] = None
) -> Callable[[T], T]:
    return register_operator(op_type, DeviceType.CUDA, engine, context)


def operator_schema(
    op_type: str, context: Optional[DispatchContext] = None
) -> OpSchema:
    """Register a schema for op_type and return it for chaining."""
    ctx = context if context is not None else get_default_context()
    return ctx.new_schema(op_type)


def register_net_type(
    net_type: str, context: Optional[DispatchContext] = None
) -> Callable[[T], T]:
    """Decorator registering a net class under a net type name."""

    def decorator(factory: T) -> T:
        ctx = context if context is not None else get_default_context()
        ctx.net_types.register(net_type, factory)
        return factory

    return decorator


def set_per_op_engine_pref(per_op_engine_pref: PerOpEnginePrefType) -> None:
    get_default_context().engine_prefs.set_per_op_engine_pref(per_op_engine_pref)


def set_global_engine_pref(global_engine_pref: GlobalEnginePrefType) -> None:
    get_default_context().engine_prefs.set_global_engine_pref(global_engine_pref)


def set_engine_pref(
    per_op_engine_pref: PerOpEnginePrefType,
    global_engine_pref: GlobalEnginePrefType,
) -> None:
    get_default_context().engine_prefs.set_engine_pref(
        per_op_engine_pref, global_engine_pref
    )


def set_op_engine_pref(op_type: str, op_pref: Dict[DeviceType, List[str]]) -> None:
    get_default_context().engine_prefs.set_op_engine_pref(op_type, op_pref)
