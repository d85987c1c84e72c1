# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Operator Schemas

Declarative contracts for operator types: input/output arity, which
input/output pairs may (or must) share a blob, and optional shape and
cost inference hooks.

Schemas are optional. Dispatch verifies a definition against its schema
when one is registered and only logs a diagnostic when none is.

Example:
    schemas.new_schema("Relu") \\
        .num_inputs(1) \\
        .num_outputs(1) \\
        .allow_inplace([(0, 0)]) \\
        .identical_type_and_shape()
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from ..errors import ConfigurationError
from .defs import OperatorDef

logger = logging.getLogger("meridian.core.schema")

MAX_ARITY = 2**31 - 1

InplacePredicate = Callable[[int, int], bool]
TensorInferenceFunc = Callable[[OperatorDef, list[tuple]], list[tuple]]
CostInferenceFunc = Callable[[OperatorDef, list[tuple]], "OpCost"]


@dataclass
class OpCost:
    """Estimated cost of running one operator."""

    flops: int = 0
    bytes_read: int = 0
    bytes_written: int = 0


def _never(_in: int, _out: int) -> bool:
    return False


def _pairs_predicate(
    pairs: Union[Iterable[tuple[int, int]], InplacePredicate]
) -> InplacePredicate:
    if callable(pairs):
        return pairs
    allowed = {(int(i), int(o)) for i, o in pairs}
    return lambda i, o: (i, o) in allowed


class OpSchema:
    """
    Contract for one operator type.

    All builder methods return the schema so calls can be chained.
    """

    def __init__(self, op_type: str):
        self.op_type = op_type
        self.doc = ""
        self.is_private = False
        self._min_input = 0
        self._max_input = MAX_ARITY
        self._min_output = 0
        self._max_output = MAX_ARITY
        self._inplace_allowed: InplacePredicate = _never
        self._inplace_enforced: InplacePredicate = _never
        self._tensor_inference: Optional[TensorInferenceFunc] = None
        self._cost_inference: Optional[CostInferenceFunc] = None
        self._args: dict[str, str] = {}
        self._input_docs: dict[int, tuple[str, str]] = {}
        self._output_docs: dict[int, tuple[str, str]] = {}

    # ------------------------------------------------------------------
    # Builder
    # ------------------------------------------------------------------

    def num_inputs(self, n: int, max_n: Optional[int] = None) -> "OpSchema":
        self._min_input = n
        self._max_input = n if max_n is None else max_n
        return self

    def num_outputs(self, n: int, max_n: Optional[int] = None) -> "OpSchema":
        self._min_output = n
        self._max_output = n if max_n is None else max_n
        return self

    def allow_inplace(
        self, pairs: Union[Iterable[tuple[int, int]], InplacePredicate]
    ) -> "OpSchema":
        self._inplace_allowed = _pairs_predicate(pairs)
        return self

    def enforce_inplace(
        self, pairs: Union[Iterable[tuple[int, int]], InplacePredicate]
    ) -> "OpSchema":
        self._inplace_enforced = _pairs_predicate(pairs)
        return self

    def allow_one_to_one_inplace(self) -> "OpSchema":
        return self.allow_inplace(lambda i, o: i == o)

    def enforce_one_to_one_inplace(self) -> "OpSchema":
        return self.enforce_inplace(lambda i, o: i == o)

    def tensor_inference_function(self, fn: TensorInferenceFunc) -> "OpSchema":
        self._tensor_inference = fn
        return self

    def identical_type_and_shape(self) -> "OpSchema":
        """Every output has the shape of input 0."""
        return self.tensor_inference_function(
            lambda op_def, shapes: [shapes[0]] * len(op_def.output)
        )

    def identical_type_and_shape_of_input(self, idx: int) -> "OpSchema":
        return self.tensor_inference_function(
            lambda op_def, shapes: [shapes[idx]] * len(op_def.output)
        )

    def cost_inference_function(self, fn: CostInferenceFunc) -> "OpSchema":
        self._cost_inference = fn
        return self

    def set_doc(self, doc: str) -> "OpSchema":
        self.doc = doc.strip()
        return self

    def arg(self, name: str, description: str) -> "OpSchema":
        self._args[name] = description
        return self

    def input(self, idx: int, name: str, description: str = "") -> "OpSchema":
        self._input_docs[idx] = (name, description)
        return self

    def output(self, idx: int, name: str, description: str = "") -> "OpSchema":
        self._output_docs[idx] = (name, description)
        return self

    def private(self) -> "OpSchema":
        self.is_private = True
        return self

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def min_input(self) -> int:
        return self._min_input

    @property
    def max_input(self) -> int:
        return self._max_input

    @property
    def min_output(self) -> int:
        return self._min_output

    @property
    def max_output(self) -> int:
        return self._max_output

    @property
    def args(self) -> dict[str, str]:
        return dict(self._args)

    def inplace_allowed(self, in_idx: int, out_idx: int) -> bool:
        return self._inplace_allowed(in_idx, out_idx)

    def inplace_enforced(self, in_idx: int, out_idx: int) -> bool:
        return self._inplace_enforced(in_idx, out_idx)

    def verify(self, op_def: OperatorDef) -> bool:
        """
        Check a definition against this schema.

        Returns:
            False (with the reason logged) on any violation.
        """
        num_in = len(op_def.input)
        num_out = len(op_def.output)
        if not self._min_input <= num_in <= self._max_input:
            logger.error(
                "Input size %d not in range [min=%d, max=%d] for %s",
                num_in, self._min_input, self._max_input, op_def.type,
            )
            return False
        if not self._min_output <= num_out <= self._max_output:
            logger.error(
                "Output size %d not in range [min=%d, max=%d] for %s",
                num_out, self._min_output, self._max_output, op_def.type,
            )
            return False

        for in_idx, in_name in enumerate(op_def.input):
            for out_idx, out_name in enumerate(op_def.output):
                enforced = self._inplace_enforced(in_idx, out_idx)
                if in_name == out_name and not (
                    enforced or self._inplace_allowed(in_idx, out_idx)
                ):
                    logger.error(
                        "Input index %d and output idx %d (%s) are set to be "
                        "in-place but this is actually not supported by op %s",
                        in_idx, out_idx, in_name, op_def.type,
                    )
                    return False
                if in_name != out_name and enforced:
                    logger.error(
                        "Input index %d (%s) and output idx %d (%s) are not "
                        "in-place but should be as required by op %s",
                        in_idx, in_name, out_idx, out_name, op_def.type,
                    )
                    return False
        return True

    def infer_tensor(
        self, op_def: OperatorDef, input_shapes: list[tuple]
    ) -> list[Optional[tuple]]:
        """
        Infer output shapes. Unknown shapes are reported as None.
        """
        if self._tensor_inference is None:
            return [None] * len(op_def.output)
        return self._tensor_inference(op_def, input_shapes)

    def infer_cost(self, op_def: OperatorDef, input_shapes: list[tuple]) -> OpCost:
        """
        Estimate the cost of running op_def.

        Raises:
            NotImplementedError: If no cost inference function is set.
        """
        if self._cost_inference is None:
            raise NotImplementedError(
                f"No cost inference function registered for {self.op_type}"
            )
        return self._cost_inference(op_def, input_shapes)

    def __repr__(self) -> str:
        return (
            f"OpSchema('{self.op_type}', inputs=[{self._min_input}, {self._max_input}], "
            f"outputs=[{self._min_output}, {self._max_output}])"
        )


class OpSchemaRegistry:
    """
    Maps operator type names to their schemas.

    Registration is append-only; registering a type twice is a
    configuration error.
    """

    def __init__(self):
        self._schemas: dict[str, OpSchema] = {}
        self._lock = threading.Lock()

    def new_schema(self, op_type: str) -> OpSchema:
        """Register and return an empty schema for op_type."""
        with self._lock:
            if op_type in self._schemas:
                raise ConfigurationError(
                    f"Schema for operator '{op_type}' is already registered",
                    config_key="schema",
                    config_value=op_type,
                )
            schema = OpSchema(op_type)
            self._schemas[op_type] = schema
        logger.debug("Registered schema: %s", op_type)
        return schema

    def add(self, schema: OpSchema) -> OpSchema:
        """Register an already built schema."""
        with self._lock:
            if schema.op_type in self._schemas:
                raise ConfigurationError(
                    f"Schema for operator '{schema.op_type}' is already registered",
                    config_key="schema",
                    config_value=schema.op_type,
                )
            self._schemas[schema.op_type] = schema
        return schema

    def schema(self, op_type: str) -> Optional[OpSchema]:
        return self._schemas.get(op_type)

    def keys(self) -> list[str]:
        return sorted(self._schemas)

    def __contains__(self, op_type: str) -> bool:
        return op_type in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)
