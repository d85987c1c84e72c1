# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for Recurrent Network Execution

Validates:
- Link application as row views of the external tensors
- Recurrent state priming and offset aliases
- Step workspace pooling with and without the executor
- Argument validation
"""

import json

import numpy as np
import pytest

from meridian import EngineConfig, NetDef, OperatorDef, Tensor, Workspace
from meridian.core.operator import create_operator
from meridian.errors import NetConstructionError, SchemaError, ValidationError
from meridian.operators.recurrent_executor import (
    RecurrentNetworkExecutor,
    update_timestep_blob,
)
from meridian.operators.recurrent_network_op import (
    APPLY_LINK_OP,
    EXECUTOR_POOL_SIZE,
    FORWARD_ONLY_POOL_SIZE,
    Link,
    ScratchWorkspaces,
    add_apply_link_ops,
    get_recurrent_mapping,
)

from helpers import feed, fetch

SEQ_LEN = 5
BATCH = 2
STATE = 3


def cumsum_step_net(name="cumsum_step", net_type=""):
    """hidden[t + 1] = hidden[t] + input[t]"""
    step = NetDef(name=name, type=net_type, external_input=["hidden_prev", "input_t"])
    step.add_op("Add", ["hidden_prev", "input_t"], ["hidden_next"])
    return step


def cumsum_rnn_def(step_net=None, executor=False, **overrides):
    arg = {
        "step_net": step_net if step_net is not None else cumsum_step_net(),
        "recurrent_states": ["hidden_all"],
        "initial_recurrent_state_ids": [1],
        "link_internal": ["input_t", "hidden_prev", "hidden_next"],
        "link_external": ["input", "hidden_all", "hidden_all"],
        "link_offset": [0, 0, 1],
        "link_window": [1, 1, 1],
        "alias_src": ["hidden_all"],
        "alias_dst": ["hidden_last"],
        "alias_offset": [-1],
        "enable_rnn_executor": int(executor),
    }
    arg.update(overrides)
    return OperatorDef(
        type="RecurrentNetwork",
        input=["input", "hidden_init"],
        output=["hidden_all", "hidden_last", "step_workspaces"],
        arg=arg,
    )


@pytest.fixture
def inputs():
    rng = np.random.default_rng(0)
    return (
        rng.standard_normal((SEQ_LEN, BATCH, STATE)).astype(np.float32),
        rng.standard_normal((BATCH, STATE)).astype(np.float32),
    )


def expected_cumsum(x, init):
    rows = [init]
    for step in x:
        rows.append(rows[-1] + step)
    return np.stack(rows)


def run_rnn(ws, op_def, x, init):
    feed(ws, "input", x)
    feed(ws, "hidden_init", init)
    op = create_operator(op_def, ws)
    assert op.run()
    return op


class TestApplyLink:
    """Tests for rnn_internal_apply_link."""

    @pytest.fixture
    def link_ws(self, ws):
        feed(ws, "ext", np.arange(8).reshape(4, 2))
        update_timestep_blob(ws, "t", 1)
        return ws

    def apply(self, ws, offset, window):
        op_def = OperatorDef(
            type=APPLY_LINK_OP,
            input=["t", "ext"],
            output=["view", "ext"],
            arg={"offset": offset, "window": window},
        )
        op = create_operator(op_def, ws)
        assert op.run()
        return ws.get_blob("view").get(Tensor)

    def test_window_one(self, link_ws):
        view = self.apply(link_ws, offset=1, window=1)
        assert view.shape == (1, 2)
        assert view.is_view
        view.mutable_data()[:] = -1
        np.testing.assert_array_equal(
            fetch(link_ws, "ext"), [[0, 1], [2, 3], [-1, -1], [6, 7]]
        )

    def test_window_two(self, link_ws):
        view = self.apply(link_ws, offset=0, window=2)
        assert view.shape == (2, 2)
        np.testing.assert_array_equal(view.data(), [[2, 3], [4, 5]])
        view.copy_from(np.full((2, 2), 9.0, dtype=np.float32))
        np.testing.assert_array_equal(
            fetch(link_ws, "ext"), [[0, 1], [9, 9], [9, 9], [6, 7]]
        )

    def test_view_follows_timestep(self, link_ws):
        self.apply(link_ws, offset=0, window=1)
        update_timestep_blob(link_ws, "t", 3)
        view = self.apply(link_ws, offset=0, window=1)
        np.testing.assert_array_equal(view.data(), [[6, 7]])

    def test_required_arguments(self, link_ws):
        op_def = OperatorDef(type=APPLY_LINK_OP, input=["t", "ext"], output=["view", "ext"])
        with pytest.raises(ValidationError, match="offset not set"):
            create_operator(op_def, link_ws)

    def test_external_must_be_inplace(self, link_ws):
        op_def = OperatorDef(
            type=APPLY_LINK_OP,
            input=["t", "ext"],
            output=["view", "other"],
            arg={"offset": 0, "window": 1},
        )
        with pytest.raises(SchemaError):
            create_operator(op_def, link_ws)

    def test_empty_external(self, ws):
        feed(ws, "ext", np.zeros((0, 2)))
        update_timestep_blob(ws, "t", 0)
        with pytest.raises(ValidationError, match="is empty"):
            self.apply(ws, offset=0, window=1)

    def test_out_of_range(self, link_ws):
        with pytest.raises(ValidationError, match="out of bounds"):
            self.apply(link_ws, offset=2, window=2)


class TestRecurrentNetwork:
    """End-to-end runs of RecurrentNetwork."""

    def test_cumulative_sum(self, ws, inputs):
        x, init = inputs
        run_rnn(ws, cumsum_rnn_def(), x, init)
        expected = expected_cumsum(x, init)
        np.testing.assert_allclose(fetch(ws, "hidden_all"), expected, rtol=1e-6)
        np.testing.assert_allclose(fetch(ws, "hidden_last"), expected[-1:], rtol=1e-6)

    def test_alias_shares_state_buffer(self, ws, inputs):
        run_rnn(ws, cumsum_rnn_def(), *inputs)
        state = ws.get_blob("hidden_all").get(Tensor)
        alias = ws.get_blob("hidden_last").get(Tensor)
        assert alias.shares_memory_with(state)

    def test_executor_matches_plain_path(self, context, inputs):
        x, init = inputs
        plain_ws = Workspace(context=context)
        executor_ws = Workspace(context=context)
        plain = run_rnn(plain_ws, cumsum_rnn_def(), x, init)
        executed = run_rnn(executor_ws, cumsum_rnn_def(executor=True), x, init)

        assert plain.executor is None
        assert executed.executor is not None
        np.testing.assert_array_equal(
            fetch(plain_ws, "hidden_all"), fetch(executor_ws, "hidden_all")
        )
        np.testing.assert_array_equal(
            fetch(plain_ws, "hidden_last"), fetch(executor_ws, "hidden_last")
        )

    def test_workspace_pool_sizes(self, context, inputs):
        plain_ws = Workspace(context=context)
        executor_ws = Workspace(context=context)
        run_rnn(plain_ws, cumsum_rnn_def(), *inputs)
        run_rnn(executor_ws, cumsum_rnn_def(executor=True), *inputs)

        plain = plain_ws.get_blob("step_workspaces").get(ScratchWorkspaces)
        executed = executor_ws.get_blob("step_workspaces").get(ScratchWorkspaces)
        assert len(plain.step_workspaces) == FORWARD_ONLY_POOL_SIZE
        assert len(executed.step_workspaces) == EXECUTOR_POOL_SIZE
        for step_ws in plain.step_workspaces:
            assert step_ws.shared is plain.shared_blobs_ws
        assert plain.shared_blobs_ws.shared is plain_ws

    def test_backward_pass_keeps_every_timestep(self, ws, inputs):
        op_def = cumsum_rnn_def(backward_step_net=NetDef(name="backward_step"))
        run_rnn(ws, op_def, *inputs)
        scratch = ws.get_blob("step_workspaces").get(ScratchWorkspaces)
        assert len(scratch.step_workspaces) == SEQ_LEN
        assert len({id(step_ws) for step_ws in scratch.step_workspaces}) == SEQ_LEN

    def test_rerun_reuses_workspaces(self, ws, inputs):
        x, init = inputs
        op = run_rnn(ws, cumsum_rnn_def(), x, init)
        scratch = ws.get_blob("step_workspaces").get(ScratchWorkspaces)
        first = list(scratch.step_workspaces)

        feed(ws, "input", 2 * x)
        assert op.run()
        assert scratch.step_workspaces == first
        np.testing.assert_allclose(
            fetch(ws, "hidden_all"), expected_cumsum(2 * x, init), rtol=1e-6
        )

    def test_states_live_in_operator_workspace(self, ws, inputs):
        run_rnn(ws, cumsum_rnn_def(), *inputs)
        assert "hidden_all" in ws.local_blobs()
        scratch = ws.get_blob("step_workspaces").get(ScratchWorkspaces)
        for step_ws in scratch.step_workspaces:
            assert "hidden_all" not in step_ws.local_blobs()
            assert "hidden_prev" in step_ws.local_blobs()

    def test_executor_disabled_by_config(self, context, inputs):
        ctx = context.fork(config=EngineConfig(rnn_executor=False))
        ws = Workspace(context=ctx)
        op = run_rnn(ws, cumsum_rnn_def(executor=True), *inputs)
        assert op.executor is None

    def test_recurrent_mapping(self, ws, inputs):
        op = run_rnn(ws, cumsum_rnn_def(executor=True), *inputs)
        assert op.executor.recurrent_mapping == {"hidden_next": "hidden_prev"}
        assert not op.executor.parallel
        assert op.executor.max_parallel_timesteps == EXECUTOR_POOL_SIZE

    def test_parallel_timesteps(self, context):
        seq_len = 6
        x = np.linspace(-3.0, 3.0, seq_len * BATCH * STATE, dtype=np.float32)
        x = x.reshape(seq_len, BATCH, STATE)
        step = NetDef(name="relu_step")
        step.add_op("Relu", ["x_t"], ["y_t"])

        def build(executor):
            return OperatorDef(
                type="RecurrentNetwork",
                input=["x"],
                output=["y", "step_workspaces"],
                arg={
                    "step_net": step,
                    "link_internal": ["x_t", "y_t"],
                    "link_external": ["x", "y"],
                    "link_offset": [0, 0],
                    "enable_rnn_executor": int(executor),
                },
            )

        results = []
        for executor in (False, True):
            ws = Workspace(context=context)
            feed(ws, "x", x)
            feed(ws, "y", np.zeros_like(x))
            op = create_operator(build(executor), ws)
            assert op.run()
            results.append(fetch(ws, "y"))
            if executor:
                assert op.executor.parallel
        np.testing.assert_array_equal(results[0], np.maximum(x, 0))
        np.testing.assert_array_equal(results[1], results[0])


class TestRecurrentInputs:
    """Tests for recurrent state priming."""

    def test_one_dimensional_initial_state(self, ws, inputs):
        x, _ = inputs
        init = np.array([1.0, 2.0, 3.0], dtype=np.float32)
        feed(ws, "input", x)
        feed(ws, "hidden_init", init)
        assert create_operator(cumsum_rnn_def(), ws).run()
        expected = expected_cumsum(x, np.broadcast_to(init, (BATCH, STATE)))
        np.testing.assert_allclose(fetch(ws, "hidden_all"), expected, rtol=1e-6)

    def test_three_dimensional_initial_state(self, ws, inputs):
        x, init = inputs
        run_rnn(ws, cumsum_rnn_def(), x, init[None])
        np.testing.assert_allclose(
            fetch(ws, "hidden_all"), expected_cumsum(x, init), rtol=1e-6
        )

    def test_batch_mismatch(self, ws, inputs):
        x, _ = inputs
        feed(ws, "input", x)
        feed(ws, "hidden_init", np.zeros((BATCH + 1, STATE)))
        op = create_operator(cumsum_rnn_def(), ws)
        with pytest.raises(ValidationError, match="batch size"):
            op.run()

    def test_too_many_dimensions(self, ws, inputs):
        x, _ = inputs
        feed(ws, "input", x)
        feed(ws, "hidden_init", np.zeros((1, 1, BATCH, STATE)))
        op = create_operator(cumsum_rnn_def(), ws)
        with pytest.raises(ValidationError, match="1 to 3 dimensions"):
            op.run()

    def test_sequence_needs_batch_dimension(self, ws, inputs):
        _, init = inputs
        feed(ws, "input", np.zeros(SEQ_LEN))
        feed(ws, "hidden_init", init)
        op = create_operator(cumsum_rnn_def(), ws)
        with pytest.raises(ValidationError):
            op.run()


class TestOffsetAlias:
    """Tests for aliasing outputs onto state rows."""

    def test_full_alias(self, ws, inputs):
        run_rnn(ws, cumsum_rnn_def(alias_offset=[0]), *inputs)
        assert fetch(ws, "hidden_last").shape == (SEQ_LEN + 1, BATCH, STATE)

    def test_positive_offset(self, ws, inputs):
        x, init = inputs
        run_rnn(ws, cumsum_rnn_def(alias_offset=[1]), x, init)
        np.testing.assert_allclose(
            fetch(ws, "hidden_last"), expected_cumsum(x, init)[1:], rtol=1e-6
        )

    def test_invalid_offset(self, ws, inputs):
        x, init = inputs
        feed(ws, "input", x)
        feed(ws, "hidden_init", init)
        op = create_operator(cumsum_rnn_def(alias_offset=[-(SEQ_LEN + 2)]), ws)
        with pytest.raises(ValidationError, match="Invalid number of timesteps"):
            op.run()


class TestArguments:
    """Construction-time argument validation."""

    @pytest.fixture
    def fed_ws(self, ws, inputs):
        feed(ws, "input", inputs[0])
        feed(ws, "hidden_init", inputs[1])
        return ws

    def test_states_inputs_mismatch(self, fed_ws):
        with pytest.raises(ValidationError, match="states/inputs mismatch"):
            create_operator(cumsum_rnn_def(initial_recurrent_state_ids=[]), fed_ws)

    def test_link_offset_mismatch(self, fed_ws):
        with pytest.raises(ValidationError, match="internal/offset mismatch"):
            create_operator(cumsum_rnn_def(link_offset=[0, 0]), fed_ws)

    def test_link_external_mismatch(self, fed_ws):
        with pytest.raises(ValidationError, match="external/offset mismatch"):
            create_operator(cumsum_rnn_def(link_external=["input"]), fed_ws)

    def test_link_window_mismatch(self, fed_ws):
        with pytest.raises(ValidationError, match="external/window mismatch"):
            create_operator(cumsum_rnn_def(link_window=[1, 1]), fed_ws)

    def test_alias_mismatch(self, fed_ws):
        with pytest.raises(ValidationError, match="alias_src/alias_offset"):
            create_operator(cumsum_rnn_def(alias_offset=[]), fed_ws)
        with pytest.raises(ValidationError, match="alias_dst/alias_offset"):
            create_operator(cumsum_rnn_def(alias_dst=[]), fed_ws)

    def test_missing_step_net(self, fed_ws):
        with pytest.raises(ValidationError, match="No valid NetDef"):
            create_operator(cumsum_rnn_def(step_net=""), fed_ws)

    def test_invalid_step_net_text(self, fed_ws):
        with pytest.raises(ValidationError, match="Invalid NetDef"):
            create_operator(cumsum_rnn_def(step_net="[1, 2]"), fed_ws)

    def test_step_net_as_text_and_dict(self, context, inputs):
        x, init = inputs
        step = cumsum_step_net()
        for form in (json.dumps(step.to_dict()), step.to_dict()):
            ws = Workspace(context=context)
            run_rnn(ws, cumsum_rnn_def(step_net=form), x, init)
            np.testing.assert_allclose(
                fetch(ws, "hidden_all"), expected_cumsum(x, init), rtol=1e-6
            )

    def test_step_net_is_copied(self, fed_ws):
        step = cumsum_step_net()
        op = create_operator(cumsum_rnn_def(step_net=step), fed_ws)
        assert len(step.op) == 1
        assert step.op[0].control_input == []
        assert [o.type for o in op.step_net_def.op] == [APPLY_LINK_OP] * 3 + ["Add"]

    def test_default_step_net_name(self, fed_ws):
        op = create_operator(cumsum_rnn_def(step_net=cumsum_step_net(name="")), fed_ws)
        assert op.step_net_def.name == "step_net"

    def test_rnn_net_type(self, fed_ws):
        plain = create_operator(cumsum_rnn_def(step_net=cumsum_step_net(net_type="rnn")), fed_ws)
        assert plain.step_net_def.type == "async_simple"


class TestHelpers:
    """Tests for link helpers and the executor."""

    def test_forward_mapping(self):
        links = [
            Link("x_t", "x", 0),
            Link("h_prev", "h", 0),
            Link("h_next", "h", 1),
        ]
        assert get_recurrent_mapping(links, backward=False) == {"h_next": "h_prev"}

    def test_backward_mapping(self):
        links = [Link("g_next", "g", 1), Link("g_prev", "g", 0)]
        assert get_recurrent_mapping(links, backward=True) == {"g_prev": "g_next"}
        assert get_recurrent_mapping(links, backward=False) == {}

    def test_add_apply_link_ops(self):
        net_def = NetDef(name="step")
        reader = net_def.add_op("Relu", ["h"], ["o"])
        writer = net_def.add_op("Relu", ["o"], ["h_next"])
        links = [Link("h", "S", 0), Link("h_next", "S", 1, 2)]
        add_apply_link_ops(links, "timestep", None, net_def)

        assert [op.type for op in net_def.op] == [APPLY_LINK_OP, APPLY_LINK_OP, "Relu", "Relu"]
        assert net_def.op[1].input == ["timestep", "S"]
        assert net_def.op[1].output == ["h_next", "S"]
        assert net_def.op[1].arg == {"offset": 1, "window": 2}
        assert reader.control_input == []
        assert writer.control_input == ["h_next"]
        assert net_def.external_input == ["h", "S", "h_next", "S"]

    def test_executor_parallel_rules(self):
        step = NetDef(name="s")
        assert RecurrentNetworkExecutor(step, {}, "t", [Link("a", "x", 0)]).parallel
        assert not RecurrentNetworkExecutor(step, {}, "t", [Link("a", "x", 0, 2)]).parallel
        assert not RecurrentNetworkExecutor(
            step, {}, "t", [Link("a", "x", 0), Link("b", "x", 1)]
        ).parallel
        assert not RecurrentNetworkExecutor(step, {"b": "a"}, "t", []).parallel

    def test_executor_requires_initialized_timesteps(self):
        executor = RecurrentNetworkExecutor(NetDef(name="s"), {}, "t", [])
        assert executor.run(0)
        with pytest.raises(ValidationError, match="not initialized"):
            executor.run(2)

    def test_executor_rnn_net_type(self, ws):
        executor = RecurrentNetworkExecutor(NetDef(name="s", type="rnn"), {}, "t", [])
        executor.ensure_timestep_initialized(0, ws)
        assert type(ws.get_net("s")).__name__ == "SimpleNet"
        assert executor.run(1)
        assert fetch(ws, "t")[0] == 0

    def test_executor_unknown_net_type(self, ws):
        executor = RecurrentNetworkExecutor(NetDef(name="s", type="no_such_type"), {}, "t", [])
        with pytest.raises(NetConstructionError, match="Step Net construction failure"):
            executor.ensure_timestep_initialized(0, ws)

    def test_executor_path_unknown_step_net_type(self, ws, inputs):
        op_def = cumsum_rnn_def(
            step_net=cumsum_step_net("step", net_type="no_such_type"),
            executor=True,
        )
        x, h0 = inputs
        feed(ws, "input", x)
        feed(ws, "hidden_init", h0)
        op = create_operator(op_def, ws)
        with pytest.raises(NetConstructionError, match="Step Net construction failure"):
            op.run()
