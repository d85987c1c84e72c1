# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for Workspace

Validates:
- Blob lookup precedence (local, forwarded, shared parent)
- Idempotent blob creation
- Blob forwarding between workspaces
- Net lifecycle and run helpers
"""

import signal

import numpy as np
import pytest

from meridian import NetDef, OperatorDef, StopOnSignal, Workspace
from meridian.core.context import register_cpu_operator
from meridian.core.operator import Operator
from meridian.errors import NetConstructionError, SchemaError, ValidationError

from helpers import feed, fetch


class CounterOp(Operator):
    """Increments its int64 output on every run."""

    def run_on_device(self):
        out = self.output(0)
        if not out.is_initialized:
            out.copy_from(np.zeros(1, dtype=np.int64))
        out.mutable_data()[0] += 1
        return True


class FailOp(Operator):
    def run_on_device(self):
        return False


@pytest.fixture
def counter_ws(context):
    register_cpu_operator("Counter", context=context)(CounterOp)
    register_cpu_operator("Fail", context=context)(FailOp)
    return Workspace(context=context)


def counter_net(name="counter", net_type=""):
    net_def = NetDef(name=name, type=net_type)
    net_def.add_op("Counter", [], ["count"])
    return net_def


class TestBlobLookup:
    """Tests for blob visibility."""

    def test_create_is_idempotent(self, ws):
        blob = ws.create_blob("x")
        feed(ws, "x", [1.0, 2.0])
        assert ws.create_blob("x") is blob
        np.testing.assert_array_equal(fetch(ws, "x"), [1.0, 2.0])

    def test_missing_blob(self, ws):
        assert ws.get_blob("missing") is None
        assert not ws.has_blob("missing")

    def test_parent_visible_from_child(self, ws):
        parent_blob = ws.create_blob("x")
        child = Workspace(ws)
        assert child.has_blob("x")
        assert child.get_blob("x") is parent_blob
        assert child.create_blob("x") is parent_blob
        assert child.local_blobs() == []

    def test_child_blobs_not_visible_from_parent(self, ws):
        child = Workspace(ws)
        child.create_blob("y")
        assert not ws.has_blob("y")

    def test_local_shadows_parent(self, ws):
        ws.create_blob("x")
        child = Workspace(ws)
        local = child.create_local_blob("x")
        assert child.get_blob("x") is local
        assert ws.get_blob("x") is not local

    def test_child_inherits_context(self, ws):
        assert Workspace(ws).context is ws.context

    def test_blob_listing(self, ws):
        ws.create_blob("p")
        child = Workspace(ws)
        child.create_blob("c")
        assert child.blobs() == ["c", "p"]

    def test_remove_blob(self, ws):
        ws.create_blob("x")
        assert ws.remove_blob("x")
        assert not ws.remove_blob("x")
        assert not ws.has_blob("x")


class TestBlobForwarding:
    """Tests for add_blob_mapping."""

    def test_forwarded_blob(self, ws):
        other = Workspace(context=ws.context)
        src = other.create_blob("src")
        ws.add_blob_mapping(other, {"alias": "src"})
        assert ws.get_blob("alias") is src
        assert "alias" in ws.blobs()

    def test_forwarded_before_parent(self, ws):
        parent_blob = ws.create_blob("x")
        child = Workspace(ws)
        other = Workspace(context=ws.context)
        forwarded = other.create_blob("x")
        child.add_blob_mapping(other, {"x": "x"})
        assert child.get_blob("x") is forwarded
        assert child.get_blob("x") is not parent_blob

    def test_local_before_forwarded(self, ws):
        local = ws.create_blob("x")
        other = Workspace(context=ws.context)
        other.create_blob("x")
        ws.add_blob_mapping(other, {"x": "x"})
        assert ws.get_blob("x") is local

    def test_missing_source(self, ws):
        with pytest.raises(ValidationError, match="Invalid parent workspace blob"):
            ws.add_blob_mapping(Workspace(context=ws.context), {"x": "nope"})

    def test_redefinition(self, ws):
        other = Workspace(context=ws.context)
        other.create_blob("a")
        other.create_blob("b")
        ws.add_blob_mapping(other, {"x": "a"})
        ws.add_blob_mapping(other, {"x": "a"})
        with pytest.raises(ValidationError, match="Redefinition"):
            ws.add_blob_mapping(other, {"x": "b"})

    def test_chained_forwarding(self, ws):
        origin = Workspace(context=ws.context)
        blob = origin.create_blob("data")
        middle = Workspace(context=ws.context)
        middle.add_blob_mapping(origin, {"mid": "data"})
        ws.add_blob_mapping(middle, {"leaf": "mid"})
        assert ws.get_blob("leaf") is blob

    def test_skip_defined_blobs(self, ws):
        ws.create_blob("x")
        child = Workspace(ws)
        other = Workspace(context=ws.context)
        other.create_blob("x")
        child.add_blob_mapping(other, {"x": "x"}, skip_defined_blobs=True)
        assert child.get_blob("x") is ws.get_blob("x")

    def test_forwarded_cannot_become_local(self, ws):
        other = Workspace(context=ws.context)
        other.create_blob("x")
        ws.add_blob_mapping(other, {"x": "x"})
        with pytest.raises(ValidationError):
            ws.create_local_blob("x")

    def test_create_blob_returns_forwarded_target(self, ws):
        other = Workspace(context=ws.context)
        src = other.create_blob("src")
        ws.add_blob_mapping(other, {"x": "src"})
        assert ws.create_blob("x") is src
        assert "x" not in ws.local_blobs()

    def test_create_blob_with_removed_source(self, ws):
        other = Workspace(context=ws.context)
        other.create_blob("src")
        ws.add_blob_mapping(other, {"x": "src"})
        assert other.remove_blob("src")
        with pytest.raises(ValidationError, match="no longer exists"):
            ws.create_blob("x")
        with pytest.raises(ValidationError):
            ws.create_local_blob("x")
        assert "x" not in ws.local_blobs()


class TestNets:
    """Tests for net creation and execution through the workspace."""

    def test_create_and_run(self, counter_ws):
        net = counter_ws.create_net(counter_net())
        assert counter_ws.get_net("counter") is net
        assert counter_ws.has_net("counter")
        assert counter_ws.nets() == ["counter"]
        assert counter_ws.run_net("counter")
        assert fetch(counter_ws, "count")[0] == 1

    def test_empty_name(self, counter_ws):
        with pytest.raises(ValidationError):
            counter_ws.create_net(counter_net(name=""))

    def test_refuse_overwrite(self, counter_ws):
        counter_ws.create_net(counter_net())
        with pytest.raises(ValidationError, match="respectfully refuse"):
            counter_ws.create_net(counter_net())

    def test_overwrite(self, counter_ws):
        first = counter_ws.create_net(counter_net(net_type="async_simple"))
        second = counter_ws.create_net(counter_net(), overwrite=True)
        assert second is not first
        assert counter_ws.get_net("counter") is second
        # the replaced net was closed
        with pytest.raises(RuntimeError):
            first.run()

    def test_unknown_net_type(self, counter_ws):
        assert counter_ws.create_net(counter_net(net_type="no_such_type")) is None
        assert not counter_ws.has_net("counter")

    def test_run_unknown_net(self, ws):
        assert not ws.run_net("missing")
        assert not ws.run_net_iterations("missing", 3)

    def test_delete_net(self, counter_ws):
        counter_ws.create_net(counter_net())
        counter_ws.delete_net("counter")
        assert counter_ws.get_net("counter") is None

    def test_run_net_iterations(self, counter_ws):
        counter_ws.create_net(counter_net())
        assert counter_ws.run_net_iterations("counter", 10)
        assert fetch(counter_ws, "count")[0] == 10

    def test_should_continue_stops_early(self, counter_ws):
        counter_ws.create_net(counter_net())
        seen = []

        def should_continue(iteration):
            seen.append(iteration)
            return iteration < 3

        assert counter_ws.run_net_iterations("counter", 10, should_continue)
        assert fetch(counter_ws, "count")[0] == 3
        assert seen == [0, 1, 2, 3]

    def test_iterations_stop_on_failure(self, counter_ws):
        net_def = counter_net()
        net_def.add_op("Fail", [], ["unused"])
        counter_ws.create_net(net_def)
        assert not counter_ws.run_net_iterations("counter", 5)
        assert fetch(counter_ws, "count")[0] == 1

    def test_run_net_once(self, counter_ws):
        assert counter_ws.run_net_once(counter_net())
        assert not counter_ws.has_net("counter")
        assert fetch(counter_ws, "count")[0] == 1

    def test_run_net_once_failure(self, counter_ws):
        net_def = counter_net()
        net_def.add_op("Fail", [], ["unused"])
        assert not counter_ws.run_net_once(net_def)

    def test_run_net_once_unknown_type(self, counter_ws):
        with pytest.raises(NetConstructionError):
            counter_ws.run_net_once(counter_net(net_type="no_such_type"))

    def test_run_operator_once(self, counter_ws):
        assert counter_ws.run_operator_once(OperatorDef(type="Counter", output=["c"]))
        assert fetch(counter_ws, "c")[0] == 1
        assert not counter_ws.run_operator_once(OperatorDef(type="Fail", output=["f"]))

    def test_run_operator_once_unknown_type(self, ws):
        assert not ws.run_operator_once(OperatorDef(type="DoesNotExist"))

    def test_run_operator_once_schema_error(self, ws):
        ws.create_blob("x")
        with pytest.raises(SchemaError):
            ws.run_operator_once(OperatorDef(type="Relu", input=["x"], output=["y", "z"]))

    def test_child_workspace_runs_against_parent_blobs(self, ws):
        feed(ws, "x", [-1.0, 3.0])
        child = Workspace(ws)
        assert child.run_operator_once(OperatorDef(type="Relu", input=["x"], output=["y"]))
        np.testing.assert_array_equal(fetch(child, "y"), [0.0, 3.0])
        assert not ws.has_blob("y")


@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="requires POSIX signals")
class TestStopOnSignal:
    """Tests for the signal-driven should_continue predicate."""

    def test_stop_after_signal(self, counter_ws):
        stop = StopOnSignal(signals=(signal.SIGUSR1,))
        try:
            assert stop(0)
            signal.raise_signal(signal.SIGUSR1)
            assert stop.received == signal.SIGUSR1
            assert not stop(1)

            counter_ws.create_net(counter_net())
            assert counter_ws.run_net_iterations("counter", 5, should_continue=stop)
            assert counter_ws.get_blob("count").is_empty
        finally:
            stop.restore()

    def test_restore_handlers(self):
        previous = signal.getsignal(signal.SIGUSR1)
        stop = StopOnSignal(signals=(signal.SIGUSR1,))
        assert signal.getsignal(signal.SIGUSR1) is not previous
        stop.restore()
        assert signal.getsignal(signal.SIGUSR1) is previous

