# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Recurrent Network Operators

RecurrentNetwork runs a step net once per timestep over the leading
dimension of its first input:

1. Recurrent states are primed from their initial inputs into tensors of
   shape [T + L, batch, state_size] held by the operator's workspace
2. Each timestep runs the step net in a child workspace; a prepended
   rnn_internal_apply_link operator per Link repoints the internal blob
   onto rows [t + offset, t + offset + window) of the external tensor
3. Each OffsetAlias repoints an output onto the trailing rows of a state

Forward-only runs cycle over a small pool of child workspaces; with a
backward step net every timestep keeps its own workspace.

Example:
    op = OperatorDef(
        type="RecurrentNetwork",
        input=["input", "hidden_init"],
        output=["hidden_all", "hidden_last", "step_workspaces"],
        arg={
            "step_net": step_net,
            "recurrent_states": ["hidden_all"],
            "initial_recurrent_state_ids": [1],
            "link_internal": ["input_t", "hidden_prev", "hidden_next"],
            "link_external": ["input", "hidden_all", "hidden_all"],
            "link_offset": [0, 0, 1],
            "alias_src": ["hidden_all"],
            "alias_dst": ["hidden_last"],
            "alias_offset": [-1],
        },
    )
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from ..core.context import operator_schema, register_cpu_operator
from ..core.defs import NetDef, OperatorDef, parse_net_def
from ..core.operator import Operator, OperatorBase
from ..core.schema import MAX_ARITY
from ..core.tensor import Tensor
from ..core.types import DeviceOption
from ..core.workspace import Workspace
from ..errors import NetConstructionError, ValidationError
from .recurrent_executor import RecurrentNetworkExecutor, update_timestep_blob

logger = logging.getLogger("meridian.operators.recurrent")

APPLY_LINK_OP = "rnn_internal_apply_link"
FORWARD_ONLY_POOL_SIZE = 2
EXECUTOR_POOL_SIZE = 4


@dataclass
class Link:
    """Maps rows [t + offset, t + offset + window) of external to internal."""

    internal: str
    external: str
    offset: int = 0
    window: int = 1


@dataclass
class RecurrentInput:
    """A recurrent state blob and the input blob it is primed from."""

    state: str
    input: str


@dataclass
class OffsetAlias:
    """Exposes rows [offset, T) of src (negative offsets count from the end) as dst."""

    src: str
    dst: str
    offset: int = 0


@dataclass
class ScratchWorkspaces:
    """Child workspaces kept alive between runs of a RecurrentNetwork."""

    step_workspaces: List[Optional[Workspace]] = field(default_factory=list)
    shared_blobs_ws: Optional[Workspace] = None


def get_recurrent_mapping(links: List[Link], backward: bool) -> Dict[str, str]:
    """
    Pair links reading and writing the same external buffer.

    Forward: for every offset-0 link, the first later offset-1 link on the
    same external maps its internal to the offset-0 internal. Backward
    swaps the offsets.
    """
    mappings = {}
    first_offset = 1 if backward else 0
    second_offset = 1 - first_offset
    for i, l1 in enumerate(links):
        if l1.offset != first_offset:
            continue
        for l2 in links[i + 1:]:
            if l2.offset == second_offset and l2.external == l1.external:
                mappings[l2.internal] = l1.internal
                break
    return mappings


def apply_offset_alias(alias: OffsetAlias, ws: Workspace) -> None:
    """
    Repoint alias.dst onto the trailing rows of alias.src, without copying.

    Raises:
        ValidationError: If the alias selects fewer than one timestep.
    """
    logger.debug("Aliasing: %s to: %s at offset: %d", alias.src, alias.dst, alias.offset)
    src_blob = ws.get_blob(alias.src)
    if src_blob is None:
        raise ValidationError(f"Alias source {alias.src} does not exist", parameter="alias_src")
    src = src_blob.get_mutable(Tensor)
    dst = ws.get_blob(alias.dst).get_mutable(Tensor)
    rows = src.dim(0)
    start = alias.offset if alias.offset >= 0 else rows + alias.offset
    num_timesteps = rows - start
    if num_timesteps < 1 or start < 0:
        raise ValidationError(
            f"Invalid number of timesteps: {num_timesteps}", parameter="alias_offset"
        )
    dst.share_external(src, start, rows)


def initialize_recurrent_input(
    ri: RecurrentInput, seq_len: int, batch_size: int, ws: Workspace
) -> None:
    """
    Size the state to [seq_len + L, batch_size, state_size] and copy the
    initial value into its first L rows.

    The initial input is [state_size] (broadcast over the batch),
    [batch_size, state_size], or [L, batch_size, state_size].
    """
    state_blob = ws.get_blob(ri.state)
    if state_blob is None:
        raise ValidationError(f"Recurrent state {ri.state} does not exist", parameter="recurrent_states")
    state = state_blob.get_mutable(Tensor)
    input_blob = ws.get_blob(ri.input)
    if input_blob is None:
        raise ValidationError(f"Initial state {ri.input} does not exist", parameter="initial_recurrent_state_ids")
    initial = input_blob.get(Tensor).data()
    if not 1 <= initial.ndim <= 3:
        raise ValidationError(
            f"Initial state {ri.input} must have 1 to 3 dimensions, got {initial.ndim}",
            parameter=ri.input,
        )

    state_size = initial.shape[-1]
    initial_length = initial.shape[0] if initial.ndim == 3 else 1
    state.resize(seq_len + initial_length, batch_size, state_size)
    buffer = state.mutable_data(initial.dtype)

    if initial.ndim >= 2:
        if initial.shape[-2] != batch_size:
            raise ValidationError(
                f"Initial state {ri.input} has batch size {initial.shape[-2]}, "
                f"expected {batch_size}",
                parameter=ri.input,
                expected=str(batch_size),
                received=str(initial.shape[-2]),
            )
        buffer[:initial_length] = initial.reshape(initial_length, batch_size, state_size)
    else:
        buffer[0] = np.broadcast_to(initial, (batch_size, state_size))


def prepend_ops(ops: List[OperatorDef], net_def: NetDef) -> None:
    net_def.op = list(ops) + net_def.op


def add_apply_link_ops(
    links: List[Link],
    timestep: str,
    device_option: Optional[DeviceOption],
    net_def: NetDef,
) -> None:
    """
    Prepend one rnn_internal_apply_link per link to net_def.

    When the internal blob is first written (not read) by a step operator,
    that operator gets the internal blob as a control input so it is
    ordered after the link is applied.
    """
    ops = []
    for link in links:
        op_def = OperatorDef(
            type=APPLY_LINK_OP,
            input=[timestep, link.external],
            output=[link.internal, link.external],
            device_option=device_option,
            arg={"offset": link.offset, "window": link.window},
        )
        for step_op in net_def.op:
            if step_op.has_input(link.internal):
                continue
            if step_op.has_output(link.internal):
                step_op.control_input.append(link.internal)
                break
        ops.append(op_def)
        net_def.external_input.append(link.internal)
        net_def.external_input.append(link.external)
    prepend_ops(ops, net_def)


def extract_links(
    op: OperatorBase,
    internal_arg: str,
    external_arg: str,
    offset_arg: str,
    window_arg: str,
) -> List[Link]:
    """
    Raises:
        ValidationError: If the argument lists differ in length.
    """
    internal = op.get_repeated_argument(internal_arg)
    external = op.get_repeated_argument(external_arg)
    offset = [int(o) for o in op.get_repeated_argument(offset_arg)]
    window = [int(w) for w in op.get_repeated_argument(window_arg, [1] * len(offset))]
    if len(internal) != len(offset):
        raise ValidationError(
            f"internal/offset mismatch: {internal_arg} {external_arg}",
            parameter=internal_arg,
            expected=str(len(offset)),
            received=str(len(internal)),
        )
    if len(external) != len(offset):
        raise ValidationError(
            f"external/offset mismatch: {external_arg} {offset_arg}",
            parameter=external_arg,
            expected=str(len(offset)),
            received=str(len(external)),
        )
    if len(external) != len(window):
        raise ValidationError(
            f"external/window mismatch: {external_arg} {window_arg}",
            parameter=window_arg,
            expected=str(len(external)),
            received=str(len(window)),
        )
    return [Link(i, e, o, w) for i, e, o, w in zip(internal, external, offset, window)]


def extract_net_def(op_def: OperatorDef, arg_name: str) -> NetDef:
    """
    Get a nested net from an argument holding a NetDef, its dict form or
    its JSON text. The returned definition is a private copy.
    """
    value = op_def.arg.get(arg_name)
    if isinstance(value, NetDef):
        return value.clone()
    if isinstance(value, dict):
        return NetDef.from_dict(value)
    if isinstance(value, str) and value:
        try:
            return parse_net_def(value)
        except ValueError as err:
            raise ValidationError(f"Invalid NetDef: {err}", parameter=arg_name) from None
    raise ValidationError(f"No valid NetDef for argument {arg_name}", parameter=arg_name)


@register_cpu_operator(APPLY_LINK_OP)
class RNNApplyLinkOp(Operator):
    """
    Repoint the internal blob onto rows [t + offset, t + offset + window)
    of the external blob, where t is read from the timestep blob.

    The external blob is both an input and an output so that dependency
    tracking orders readers and writers of the buffer around this op.
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._offset = int(self.get_single_argument("offset", -1))
        self._window = int(self.get_single_argument("window", -1))
        if self._offset < 0:
            raise ValidationError("offset not set", parameter="offset")
        if self._window < 0:
            raise ValidationError("window not set", parameter="window")

    def run_on_device(self) -> bool:
        t = int(self.input(0).data().reshape(-1)[0])
        external = self.input(1)
        if external.size == 0:
            raise ValidationError(
                f"External blob {self.debug_def().input[1]} is empty", parameter="external"
            )
        start = t + self._offset
        self.output(0).share_external(external, start, start + self._window)
        return True


@register_cpu_operator("RecurrentNetwork")
class RecurrentNetworkOp(Operator):
    """
    Run a step net over the leading (time) dimension of input 0.

    The last output holds the ScratchWorkspaces of the operator.
    """

    def __init__(self, operator_def, ws):
        super().__init__(operator_def, ws)
        self._shared_ws = ws
        self._enable_rnn_executor = bool(
            self.get_single_argument("enable_rnn_executor", False)
        )
        self._timestep = self.get_single_argument("timestep", "timestep")

        step_net_def = extract_net_def(operator_def, "step_net")
        if not step_net_def.name:
            step_net_def.name = "step_net"

        self._recurrent_inputs = self._construct_recurrent_inputs(operator_def, ws)
        self._links = extract_links(
            self, "link_internal", "link_external", "link_offset", "link_window"
        )
        self._aliases = self._construct_aliases()

        step_net_def.external_input.append(self._timestep)
        add_apply_link_ops(
            self._links, self._timestep, operator_def.device_option, step_net_def
        )

        self._executor: Optional[RecurrentNetworkExecutor] = None
        if ws.context.config.rnn_executor and self._enable_rnn_executor:
            logger.debug("Use RecurrentNetworkExecutor")
            self._executor = RecurrentNetworkExecutor(
                step_net_def,
                get_recurrent_mapping(self._links, backward=False),
                self._timestep,
                self._links,
            )
        else:
            if step_net_def.type == "rnn":
                step_net_def.type = "async_simple"
        self._step_net_def = step_net_def

    def _construct_recurrent_inputs(
        self, operator_def: OperatorDef, ws: Workspace
    ) -> List[RecurrentInput]:
        states = self.get_repeated_argument("recurrent_states")
        input_ids = self.get_repeated_argument("initial_recurrent_state_ids")
        if len(states) != len(input_ids):
            raise ValidationError(
                "states/inputs mismatch",
                parameter="initial_recurrent_state_ids",
                expected=str(len(states)),
                received=str(len(input_ids)),
            )
        recurrent_inputs = []
        for state, input_id in zip(states, input_ids):
            # shared between forward and backward passes
            ws.create_blob(state)
            recurrent_inputs.append(
                RecurrentInput(state=state, input=operator_def.input[int(input_id)])
            )
        return recurrent_inputs

    def _construct_aliases(self) -> List[OffsetAlias]:
        src = self.get_repeated_argument("alias_src")
        dst = self.get_repeated_argument("alias_dst")
        offset = self.get_repeated_argument("alias_offset")
        if len(src) != len(offset):
            raise ValidationError("alias_src/alias_offset mismatch", parameter="alias_src")
        if len(dst) != len(offset):
            raise ValidationError("alias_dst/alias_offset mismatch", parameter="alias_dst")
        return [OffsetAlias(s, d, int(o)) for s, d, o in zip(src, dst, offset)]

    def _has_backward_pass(self) -> bool:
        value = self.debug_def().arg.get("backward_step_net")
        if isinstance(value, (NetDef, dict)):
            return True
        return isinstance(value, str) and value != ""

    @property
    def links(self) -> List[Link]:
        return list(self._links)

    @property
    def aliases(self) -> List[OffsetAlias]:
        return list(self._aliases)

    @property
    def recurrent_inputs(self) -> List[RecurrentInput]:
        return list(self._recurrent_inputs)

    @property
    def step_net_def(self) -> NetDef:
        return self._step_net_def

    @property
    def executor(self) -> Optional[RecurrentNetworkExecutor]:
        return self._executor

    def run_on_device(self) -> bool:
        sequence = self.input(0)
        if sequence.ndim < 2:
            raise ValidationError(
                "Input 0 must be at least [T, batch]", parameter="input",
                received=str(sequence.shape),
            )
        seq_len, batch_size = sequence.dim(0), sequence.dim(1)
        for ri in self._recurrent_inputs:
            initialize_recurrent_input(ri, seq_len, batch_size, self._shared_ws)

        has_backward_pass = self._has_backward_pass()

        scratch = self.output_blob(self.output_size() - 1).get_mutable(ScratchWorkspaces)
        step_workspaces = scratch.step_workspaces
        if scratch.shared_blobs_ws is None:
            scratch.shared_blobs_ws = Workspace(self._shared_ws)
        shared_blobs_ws = scratch.shared_blobs_ws

        # Recomputed activations live once in the shared scope instead of
        # once per step workspace.
        for name in self.get_repeated_argument("recompute_blobs_on_backward"):
            shared_blobs_ws.create_blob(name)

        if has_backward_pass and seq_len > len(step_workspaces):
            step_workspaces.extend([None] * (seq_len - len(step_workspaces)))

        pool_size = EXECUTOR_POOL_SIZE if self._executor else FORWARD_ONLY_POOL_SIZE
        if not has_backward_pass and len(step_workspaces) < pool_size:
            # never shrink: other operators may share these workspaces
            step_workspaces.extend([None] * (pool_size - len(step_workspaces)))

        for t in range(seq_len):
            slot = t if has_backward_pass else t % pool_size
            if step_workspaces[slot] is None:
                step_workspaces[slot] = Workspace(shared_blobs_ws)
            step_ws = step_workspaces[slot]

            if self._executor is not None:
                if not has_backward_pass:
                    self._executor.set_max_parallel_timesteps(pool_size)
                self._executor.ensure_timestep_initialized(t, step_ws)
                continue

            update_timestep_blob(step_ws, self._timestep, t)
            step_net = step_ws.get_net(self._step_net_def.name)
            if step_net is None:
                step_net = step_ws.create_net(self._step_net_def)
            if step_net is None:
                raise NetConstructionError(
                    "Step Net construction failure", net_name=self._step_net_def.name
                )
            if not step_net.run():
                logger.error("Step net %s failed at timestep %d", self._step_net_def.name, t)
                return False

        if self._executor is not None and not self._executor.run(seq_len):
            return False

        for alias in self._aliases:
            apply_offset_alias(alias, self._shared_ws)
        return True


operator_schema("RecurrentNetwork") \
    .num_inputs(1, MAX_ARITY) \
    .num_outputs(2, MAX_ARITY) \
    .arg("step_net", "Net run once per timestep (NetDef, dict or JSON text)") \
    .arg("backward_step_net", "Backward step net; keeps one workspace per timestep") \
    .arg("recurrent_states", "State blobs primed from initial_recurrent_state_ids") \
    .arg("initial_recurrent_state_ids", "Input indices of the initial states") \
    .arg("link_internal", "Step net blob names of the links") \
    .arg("link_external", "Outer blob names of the links") \
    .arg("link_offset", "Timestep offsets of the links") \
    .arg("link_window", "Number of timesteps each link spans (default 1)") \
    .arg("alias_src", "States exposed as outputs") \
    .arg("alias_dst", "Outputs aliasing the states") \
    .arg("alias_offset", "First timestep of each alias; negative counts from the end") \
    .arg("timestep", "Name of the timestep blob (default 'timestep')") \
    .arg("enable_rnn_executor", "Run timesteps through RecurrentNetworkExecutor") \
    .set_doc("""
Run the step net in a recurrent fashion over the first dimension of input 0.

- Initialize the states from the initial recurrent state inputs
- For each timestep, apply the links mapping slices of the outer tensors
  into the step net's blobs, then run the step net
- Alias the recurrent states to the declared output blobs
""")

operator_schema(APPLY_LINK_OP) \
    .num_inputs(2) \
    .num_outputs(2) \
    .enforce_inplace([(1, 1)]) \
    .private() \
    .set_doc("Internal RNN operator.")
