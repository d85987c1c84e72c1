# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Operator and Net Definitions

In-memory graph definitions consumed by the dispatch core. They are
plain dataclasses: the caller builds them once, the core only reads them,
and programmatic rewrites (such as inserting link operators) work on a
clone().

A JSON text form is supported so that nested nets can be passed as string
arguments (see parse_net_def). Dict-valued arguments are nested NetDefs.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from .types import ArgumentMap, DeviceOption


@dataclass
class OperatorDef:
    """
    A single node of a net definition.

    Attributes:
        type: Operator type name (registry key without engine suffix).
        input: Ordered input blob names.
        output: Ordered output blob names.
        name: Optional node name.
        device_option: Optional placement; inherits the net's when unset.
        engine: Comma-separated engine names to try, in order.
        arg: Named arguments (scalars, lists or nested NetDefs).
        control_input: Blob names that only impose execution ordering.
    """

    type: str = ""
    input: list[str] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    name: str = ""
    device_option: Optional[DeviceOption] = None
    engine: str = ""
    arg: ArgumentMap = field(default_factory=dict)
    control_input: list[str] = field(default_factory=list)

    def has_device_option(self) -> bool:
        return self.device_option is not None

    def has_input(self, name: str) -> bool:
        return name in self.input

    def has_output(self, name: str) -> bool:
        return name in self.output

    def clone(self) -> "OperatorDef":
        """Create a deep copy of this definition."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "input": list(self.input),
            "output": list(self.output),
        }
        if self.name:
            data["name"] = self.name
        if self.device_option is not None:
            data["device_option"] = self.device_option.to_dict()
        if self.engine:
            data["engine"] = self.engine
        if self.arg:
            data["arg"] = {k: _arg_to_json(v) for k, v in self.arg.items()}
        if self.control_input:
            data["control_input"] = list(self.control_input)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "OperatorDef":
        device_option = data.get("device_option")
        return cls(
            type=data.get("type", ""),
            input=list(data.get("input", [])),
            output=list(data.get("output", [])),
            name=data.get("name", ""),
            device_option=(
                DeviceOption.from_dict(device_option) if device_option else None
            ),
            engine=data.get("engine", ""),
            arg={k: _arg_from_json(v) for k, v in data.get("arg", {}).items()},
            control_input=list(data.get("control_input", [])),
        )

    def debug_string(self) -> str:
        """Render the full definition for error messages."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    def __repr__(self) -> str:
        return f"OperatorDef(type='{self.type}', input={self.input}, output={self.output})"


@dataclass
class NetDef:
    """
    A graph definition: operators plus declared external inputs/outputs.

    Attributes:
        name: Net name, unique within a workspace.
        op: Operators in definition order.
        type: Net type ("simple", "async_simple", "dag"); empty means simple.
        num_workers: Worker threads for scheduling net types.
        device_option: Default placement for operators without one.
        external_input: Blobs that must exist before the net is created.
        external_output: Blobs the net must produce.
        arg: Net-level arguments.
    """

    name: str = ""
    op: list[OperatorDef] = field(default_factory=list)
    type: str = ""
    num_workers: int = 1
    device_option: Optional[DeviceOption] = None
    external_input: list[str] = field(default_factory=list)
    external_output: list[str] = field(default_factory=list)
    arg: ArgumentMap = field(default_factory=dict)

    def add_op(
        self,
        type: str,
        input: Optional[list[str]] = None,
        output: Optional[list[str]] = None,
        **arg: Any,
    ) -> OperatorDef:
        """Append an operator and return it."""
        op_def = OperatorDef(
            type=type,
            input=list(input or []),
            output=list(output or []),
            arg=arg,
        )
        self.op.append(op_def)
        return op_def

    def clone(self) -> "NetDef":
        """Create a deep copy of this definition."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "op": [op.to_dict() for op in self.op],
        }
        if self.type:
            data["type"] = self.type
        if self.num_workers != 1:
            data["num_workers"] = self.num_workers
        if self.device_option is not None:
            data["device_option"] = self.device_option.to_dict()
        if self.external_input:
            data["external_input"] = list(self.external_input)
        if self.external_output:
            data["external_output"] = list(self.external_output)
        if self.arg:
            data["arg"] = {k: _arg_to_json(v) for k, v in self.arg.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NetDef":
        device_option = data.get("device_option")
        return cls(
            name=data.get("name", ""),
            op=[OperatorDef.from_dict(op) for op in data.get("op", [])],
            type=data.get("type", ""),
            num_workers=data.get("num_workers", 1),
            device_option=(
                DeviceOption.from_dict(device_option) if device_option else None
            ),
            external_input=list(data.get("external_input", [])),
            external_output=list(data.get("external_output", [])),
            arg={k: _arg_from_json(v) for k, v in data.get("arg", {}).items()},
        )

    def debug_string(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    def __repr__(self) -> str:
        return f"NetDef(name='{self.name}', type='{self.type}', ops={len(self.op)})"


def _arg_to_json(value: Any) -> Any:
    if isinstance(value, NetDef):
        return value.to_dict()
    return value


def _arg_from_json(value: Any) -> Any:
    if isinstance(value, dict):
        return NetDef.from_dict(value)
    return value


def parse_net_def(text: str) -> NetDef:
    """
    Parse the JSON text form of a NetDef.

    Raises:
        ValueError: If the text is not a JSON object.
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("NetDef text must be a JSON object")
    return NetDef.from_dict(data)
