# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Device, Engine and Net-Type Registries

- OperatorRegistry: per-device table of registry key -> operator factory
- DeviceRegistry: device type -> OperatorRegistry
- EnginePreferences: per-op and global preferred engines consulted by
  dispatch after the engines listed explicitly in a definition
- NetTypeRegistry: net type name -> net factory

Registry keys are the operator type for the default implementation and
"<type>_ENGINE_<engine>" for engine-specific ones.

Thread Safety: registrations and preference updates are protected by a
lock; preference tables are replaced as a whole.
"""

import logging
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..errors import ConfigurationError
from .defs import NetDef, OperatorDef
from .types import DeviceType, device_type_name

if TYPE_CHECKING:
    from .net import NetBase
    from .operator import OperatorBase
    from .workspace import Workspace

logger = logging.getLogger("meridian.core.registry")

OperatorFactory = Callable[[OperatorDef, "Workspace"], "OperatorBase"]
NetFactory = Callable[[NetDef, "Workspace"], "NetBase"]

PerOpEnginePrefType = Dict[DeviceType, Dict[str, List[str]]]
GlobalEnginePrefType = Dict[DeviceType, List[str]]
EnginePrefType = List[str]

DEFAULT_ENGINE = "DEFAULT"


def op_registry_key(op_type: str, engine: str = "") -> str:
    """Registry key for an operator type and engine."""
    if engine == "" or engine == DEFAULT_ENGINE:
        return op_type
    return f"{op_type}_ENGINE_{engine}"


class OperatorRegistry:
    """
    Append-only table of operator factories for one device type.
    """

    def __init__(self, device_type: DeviceType):
        self.device_type = device_type
        self._factories: Dict[str, OperatorFactory] = {}
        self._lock = threading.Lock()

    def register(self, key: str, factory: OperatorFactory) -> None:
        """
        Register a factory under key.

        Raises:
            ConfigurationError: If key is already registered.
        """
        with self._lock:
            if key in self._factories:
                raise ConfigurationError(
                    f"Key '{key}' already registered for device "
                    f"{device_type_name(self.device_type)}",
                    config_key="operator",
                    config_value=key,
                )
            self._factories[key] = factory
        logger.debug(
            "Registered operator: %s (%s)", key, device_type_name(self.device_type)
        )

    def has(self, key: str) -> bool:
        return key in self._factories

    def get(self, key: str) -> Optional[OperatorFactory]:
        return self._factories.get(key)

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def create(
        self, key: str, op_def: OperatorDef, ws: "Workspace"
    ) -> Optional["OperatorBase"]:
        """Build an operator, or return None if key is not registered."""
        factory = self._factories.get(key)
        if factory is None:
            return None
        return factory(op_def, ws)

    def __contains__(self, key: str) -> bool:
        return key in self._factories

    def __len__(self) -> int:
        return len(self._factories)


class DeviceRegistry:
    """
    Maps device types to their operator registries.

    Looking up a device type that was never registered is fatal: it means
    the process was set up without support for that backend.
    """

    def __init__(self):
        self._registries: Dict[DeviceType, OperatorRegistry] = {}
        self._lock = threading.Lock()

    def register_device_type(self, device_type: DeviceType) -> OperatorRegistry:
        """Register a device type, returning its operator registry."""
        with self._lock:
            registry = self._registries.get(device_type)
            if registry is None:
                registry = OperatorRegistry(DeviceType(device_type))
                self._registries[device_type] = registry
                logger.debug("Registered device type: %s", device_type_name(device_type))
        return registry

    def has_device_type(self, device_type: DeviceType) -> bool:
        return device_type in self._registries

    def get(self, device_type: DeviceType) -> OperatorRegistry:
        """
        Get the operator registry of a device type.

        Raises:
            ConfigurationError: If the device type is not registered.
        """
        registry = self._registries.get(device_type)
        if registry is None:
            raise ConfigurationError(
                f"Device type {device_type_name(device_type)} not registered.",
                config_key="device_type",
                config_value=str(int(device_type)),
            )
        return registry

    def device_types(self) -> List[DeviceType]:
        return sorted(self._registries)


class EnginePreferences:
    """
    Per-op and global engine preference tables.

    Example:
        prefs.set_per_op_engine_pref({DeviceType.CPU: {"Conv": ["NNPACK"]}})
        prefs.set_global_engine_pref({DeviceType.CUDA: ["CUDNN"]})
    """

    def __init__(self, devices: DeviceRegistry):
        self._devices = devices
        self._lock = threading.Lock()
        self._per_op: PerOpEnginePrefType = {}
        self._global: GlobalEnginePrefType = {DeviceType.CUDA: ["CUDNN"]}

    def _validate_device(self, device_type: DeviceType) -> OperatorRegistry:
        return self._devices.get(device_type)

    def _validate_op(self, device_type: DeviceType, op_type: str) -> None:
        registry = self._validate_device(device_type)
        if not registry.has(op_type):
            raise ConfigurationError(
                f"Operator type {op_type} not registered in "
                f"{device_type_name(device_type)} registry.",
                config_key="engine_pref",
                config_value=op_type,
            )

    def set_per_op_engine_pref(self, per_op_engine_pref: PerOpEnginePrefType) -> None:
        """Replace the per-op preference table after validating it."""
        table = {}
        for device_type, op_prefs in per_op_engine_pref.items():
            for op_type in op_prefs:
                self._validate_op(device_type, op_type)
            table[DeviceType(device_type)] = {
                op_type: list(engines) for op_type, engines in op_prefs.items()
            }
        with self._lock:
            self._per_op = table

    def set_global_engine_pref(self, global_engine_pref: GlobalEnginePrefType) -> None:
        """Replace the global preference table after validating it."""
        table = {}
        for device_type, engines in global_engine_pref.items():
            self._validate_device(device_type)
            table[DeviceType(device_type)] = list(engines)
        with self._lock:
            self._global = table

    def set_engine_pref(
        self,
        per_op_engine_pref: PerOpEnginePrefType,
        global_engine_pref: GlobalEnginePrefType,
    ) -> None:
        self.set_per_op_engine_pref(per_op_engine_pref)
        self.set_global_engine_pref(global_engine_pref)

    def set_op_engine_pref(
        self, op_type: str, op_pref: Dict[DeviceType, EnginePrefType]
    ) -> None:
        """Update the preferences of a single operator type."""
        for device_type in op_pref:
            self._validate_op(device_type, op_type)
        with self._lock:
            table = {d: dict(prefs) for d, prefs in self._per_op.items()}
            for device_type, engines in op_pref.items():
                table.setdefault(DeviceType(device_type), {})[op_type] = list(engines)
            self._per_op = table

    def per_op_engine_pref(self) -> PerOpEnginePrefType:
        per_op = self._per_op
        return {d: {k: list(v) for k, v in prefs.items()} for d, prefs in per_op.items()}

    def global_engine_pref(self) -> GlobalEnginePrefType:
        return {d: list(v) for d, v in self._global.items()}

    def preferred_engines(self, device_type: DeviceType, op_type: str) -> List[str]:
        """Per-op preferred engines followed by global ones."""
        per_op, global_ = self._per_op, self._global
        engines = list(per_op.get(device_type, {}).get(op_type, []))
        if engines:
            logger.debug("Inserting per-op engine preference: %s", engines)
        global_engines = global_.get(device_type, [])
        if global_engines:
            logger.debug("Inserting global engine preference: %s", global_engines)
        return engines + list(global_engines)


class NetTypeRegistry:
    """Maps net type names to net factories."""

    def __init__(self):
        self._factories: Dict[str, NetFactory] = {}
        self._lock = threading.Lock()

    def register(self, net_type: str, factory: NetFactory) -> None:
        with self._lock:
            if net_type in self._factories:
                raise ConfigurationError(
                    f"Net type '{net_type}' already registered",
                    config_key="net_type",
                    config_value=net_type,
                )
            self._factories[net_type] = factory

    def get(self, net_type: str) -> Optional[NetFactory]:
        return self._factories.get(net_type)

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, net_type: str) -> bool:
        return net_type in self._factories
