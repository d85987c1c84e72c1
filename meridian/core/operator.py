# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Operators and Operator Dispatch

OperatorBase binds an OperatorDef to blobs of a workspace. create_operator()
resolves a definition into a concrete instance:

1. Verify the definition against its schema (if one is registered)
2. Build the candidate engine list: explicit engines, then per-op
   preferred engines, then global preferred engines
3. Try each candidate in order; an implementation that raises
   UnsupportedOperatorFeature is skipped
4. Fall back to the default implementation of the type
5. Annotate the engine actually used and the net position

Example:
    op = create_operator(OperatorDef(type="Relu", input=["x"], output=["y"]), ws)
    assert op.run()
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional

from ..errors import (
    OperatorCreationError,
    SchemaError,
    UnsupportedOperatorFeature,
    ValidationError,
)
from .blob import Blob
from .defs import OperatorDef
from .registry import op_registry_key
from .tensor import Tensor
from .types import DeviceOption, DeviceType, device_type_name

if TYPE_CHECKING:
    from .context import DispatchContext
    from .workspace import Workspace

logger = logging.getLogger("meridian.core.operator")

UNSET_NET_POSITION = 0

_MISSING = object()


class OperatorBase:
    """
    A definition bound to the blobs of one workspace.

    Inputs must already exist when the operator is constructed; outputs are
    created on demand. Blob objects (not names) are held, so later writes to
    a blob by other operators are observed without re-binding.
    """

    def __init__(self, operator_def: OperatorDef, ws: "Workspace"):
        self._def = operator_def
        self._ws = ws
        self._device_option = operator_def.device_option or DeviceOption()
        self._engine = ""
        self._net_position = UNSET_NET_POSITION

        self._inputs: List[Blob] = []
        for name in operator_def.input:
            blob = ws.get_blob(name)
            if blob is None:
                raise ValidationError(
                    f"Encountered a non-existing input blob: {name}",
                    parameter=operator_def.type,
                )
            self._inputs.append(blob)

        self._outputs: List[Blob] = [
            ws.create_blob(name) for name in operator_def.output
        ]

    # ------------------------------------------------------------------
    # Arguments
    # ------------------------------------------------------------------

    def has_argument(self, name: str) -> bool:
        return name in self._def.arg

    def has_single_argument_of_type(self, name: str, cls: type) -> bool:
        value = self._def.arg.get(name, _MISSING)
        if value is _MISSING or isinstance(value, (list, tuple)):
            return False
        if cls is float:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        return isinstance(value, cls)

    def get_single_argument(self, name: str, default: Any = None) -> Any:
        value = self._def.arg.get(name, _MISSING)
        if value is _MISSING:
            return default
        if isinstance(value, (list, tuple)):
            raise ValidationError(
                f"Argument '{name}' of {self._def.type} is a list, expected a single value",
                parameter=name,
            )
        return value

    def get_repeated_argument(self, name: str, default: Optional[list] = None) -> list:
        value = self._def.arg.get(name, _MISSING)
        if value is _MISSING:
            return list(default) if default is not None else []
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def input_blob(self, idx: int) -> Blob:
        return self._inputs[idx]

    def output_blob(self, idx: int) -> Blob:
        return self._outputs[idx]

    def input(self, idx: int) -> Tensor:
        return self._inputs[idx].get(Tensor)

    def output(self, idx: int) -> Tensor:
        return self._outputs[idx].get_mutable(Tensor)

    def input_size(self) -> int:
        return len(self._inputs)

    def output_size(self) -> int:
        return len(self._outputs)

    @property
    def inputs(self) -> List[Blob]:
        return list(self._inputs)

    @property
    def outputs(self) -> List[Blob]:
        return list(self._outputs)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def ws(self) -> "Workspace":
        return self._ws

    @property
    def type(self) -> str:
        return self._def.type

    @property
    def device_option(self) -> DeviceOption:
        return self._device_option

    @property
    def engine(self) -> str:
        return self._engine

    def annotate_engine(self, engine: str) -> None:
        self._engine = engine

    @property
    def net_position(self) -> int:
        return self._net_position

    def set_net_position(self, position: int) -> None:
        self._net_position = position

    def debug_def(self) -> OperatorDef:
        return self._def

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self) -> bool:
        raise NotImplementedError(f"Operator {self.type} does not implement run()")

    def run_async(self) -> bool:
        """Issue the operator; synchronous operators simply run."""
        return self.run()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(type='{self.type}', engine='{self._engine}', "
            f"inputs={self._def.input}, outputs={self._def.output})"
        )


class Operator(OperatorBase):
    """
    Base class for kernels: subclasses implement run_on_device().

    Example:
        @register_cpu_operator("Relu")
        class ReluOp(Operator):
            def run_on_device(self) -> bool:
                x = self.input(0).data()
                self.output(0).copy_from(np.maximum(x, 0))
                return True
    """

    def run(self) -> bool:
        return bool(self.run_on_device())

    def run_on_device(self) -> bool:
        raise NotImplementedError(
            f"Operator {self.type} does not implement run_on_device()"
        )


class ConstructionStatus(Enum):
    """Outcome of one construction attempt."""

    SUCCESS = "success"
    UNSUPPORTED = "unsupported"
    NOT_REGISTERED = "not_registered"


@dataclass
class ConstructionResult:
    status: ConstructionStatus
    operator: Optional[OperatorBase] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ConstructionStatus.SUCCESS


def _try_create_operator(
    key: str,
    operator_def: OperatorDef,
    ws: "Workspace",
    context: "DispatchContext",
) -> ConstructionResult:
    """
    Attempt to build the implementation registered under key.

    Raises:
        ConfigurationError: If the device type is not registered.
    """
    device_type = _device_type_of(operator_def)
    registry = context.devices.get(device_type)
    if not registry.has(key):
        return ConstructionResult(ConstructionStatus.NOT_REGISTERED)

    logger.debug("Creating operator with device type %s", device_type_name(device_type))
    try:
        op = registry.create(key, operator_def, ws)
    except UnsupportedOperatorFeature as err:
        logger.warning(
            "Operator %s does not support the requested feature. Msg: %s. Proto is: %s",
            key, err.message, operator_def.debug_string(),
        )
        return ConstructionResult(ConstructionStatus.UNSUPPORTED, reason=err.message)
    return ConstructionResult(ConstructionStatus.SUCCESS, operator=op)


def _device_type_of(operator_def: OperatorDef) -> DeviceType:
    if operator_def.device_option is None:
        return DeviceType.CPU
    return operator_def.device_option.device_type


def _candidate_engines(operator_def: OperatorDef, context: "DispatchContext") -> List[str]:
    engines = [e.strip() for e in operator_def.engine.split(",") if e.strip()]
    if context.config.disable_implicit_engine_preference:
        logger.debug("Implicit engine preferences are disabled")
        return engines
    engines.extend(
        context.engine_prefs.preferred_engines(
            _device_type_of(operator_def), operator_def.type
        )
    )
    return engines


def _create_operator(
    operator_def: OperatorDef,
    ws: "Workspace",
    net_position: int,
    context: "DispatchContext",
) -> OperatorBase:
    schema = context.schemas.schema(operator_def.type)
    if schema is not None:
        if not schema.verify(operator_def):
            raise SchemaError(operator_def.type, operator_def.debug_string())
    else:
        logger.error(
            "Cannot find operator schema for %s. Will skip schema checking.",
            operator_def.type,
        )

    max_len = context.config.operator_max_engine_name_length
    for engine in _candidate_engines(operator_def, context):
        key = op_registry_key(operator_def.type, engine)
        logger.debug("Trying to create operator %s with engine %s", operator_def.type, engine)
        result = _try_create_operator(key, operator_def, ws, context)
        if result.ok:
            result.operator.annotate_engine(engine[:max_len])
            result.operator.set_net_position(net_position)
            return result.operator
        logger.debug(
            "Engine %s is not available for operator %s.", engine, operator_def.type
        )

    if operator_def.engine:
        logger.debug("Using default implementation for %s", operator_def.type)

    result = _try_create_operator(operator_def.type, operator_def, ws, context)
    if not result.ok:
        raise OperatorCreationError(
            operator_def.type,
            device_type_name(_device_type_of(operator_def)),
            operator_def.debug_string(),
        )
    result.operator.set_net_position(net_position)
    return result.operator


def create_operator(
    operator_def: OperatorDef,
    ws: "Workspace",
    net_position: int = UNSET_NET_POSITION,
    context: Optional["DispatchContext"] = None,
) -> OperatorBase:
    """
    Resolve a definition into an operator bound to ws.

    Args:
        operator_def: Definition to instantiate.
        ws: Workspace providing the blobs.
        net_position: 1-based position inside a net, or 0 if standalone.
        context: Dispatch context (default: the workspace's).

    Returns:
        The constructed operator.

    Raises:
        SchemaError: If the definition fails schema verification.
        OperatorCreationError: If no implementation could be constructed.
        ConfigurationError: If the device type is not registered.
    """
    ctx = context if context is not None else ws.context
    try:
        return _create_operator(operator_def, ws, net_position, ctx)
    except Exception:
        if net_position != UNSET_NET_POSITION:
            ws.last_failed_op_net_position = net_position
        raise
