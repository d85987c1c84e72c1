# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Nets

A net is a NetDef instantiated against a workspace: its operators are
dispatched once at construction and run on every call to run().

Net types:
- simple: operators run in definition order on the caller's thread
- async_simple: the same order on a single worker thread; run_async()
  returns once the run is issued and wait() collects the result
- dag: operators run on a thread pool as soon as the operators they depend
  on (read-after-write, write-after-read, write-after-write, control
  inputs) have completed

Construction validates the wiring: with declared external inputs every
operator input must come from an external input or an earlier output,
every declared external output must be produced, and every declared
external input that no operator of the net produces must exist in the
workspace.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from ..errors import NetConstructionError
from ..observability import get_logger
from .defs import NetDef
from .operator import OperatorBase, create_operator

if TYPE_CHECKING:
    from .registry import NetTypeRegistry
    from .workspace import Workspace

logger = logging.getLogger("meridian.core.net")

DEFAULT_NET_TYPE = "simple"


def _check_wiring(net_def: NetDef) -> None:
    known = set(net_def.external_input)
    remaining_output = [o for o in net_def.external_output if o not in known]
    for op_def in net_def.op:
        for name in op_def.input:
            if name in known:
                continue
            if net_def.external_input:
                raise NetConstructionError(
                    f"op {op_def.type}: Source for input {name} is unknown for "
                    f"net {net_def.name}, operator {op_def.debug_string()}",
                    net_name=net_def.name,
                    blob_name=name,
                )
            logger.debug(
                "op %s: input %s is assumed to exist in the workspace for net %s",
                op_def.type, name, net_def.name,
            )
        for name in op_def.output:
            known.add(name)
            if name in remaining_output:
                remaining_output.remove(name)
    if remaining_output:
        raise NetConstructionError(
            f"Some of the blobs are declared as output but never produced by the "
            f"net {net_def.name}, the first one is {remaining_output[0]}",
            net_name=net_def.name,
            blob_name=remaining_output[0],
        )


class NetBase:
    """
    Base class of all net types.

    Subclasses instantiate operators in their constructor and implement
    run_async(); run() is run_async() followed by wait().
    """

    def __init__(self, net_def: NetDef, ws: "Workspace"):
        self._name = net_def.name
        self._ws = ws
        self._external_input = list(net_def.external_input)
        self._external_output = list(net_def.external_output)
        self._operators: List[OperatorBase] = []
        _check_wiring(net_def)
        self._check_external_inputs(net_def)

    def _check_external_inputs(self, net_def: NetDef) -> None:
        produced = {name for op_def in net_def.op for name in op_def.output}
        for name in self._external_input:
            if name in produced:
                continue
            if not self._ws.has_blob(name):
                raise NetConstructionError(
                    f"Declared external input {name} does not exist in the "
                    f"workspace for net {net_def.name}",
                    net_name=net_def.name,
                    blob_name=name,
                )

    def _instantiate_operators(self, net_def: NetDef) -> List[OperatorBase]:
        operators = []
        for position, op_def in enumerate(net_def.op, start=1):
            if not op_def.has_device_option() and net_def.device_option is not None:
                op_def = op_def.clone()
                op_def.device_option = net_def.device_option
            logger.debug("Creating operator %s (%s)", op_def.name or "", op_def.type)
            operators.append(create_operator(op_def, self._ws, position))
        return operators

    @property
    def name(self) -> str:
        return self._name

    @property
    def external_input(self) -> List[str]:
        return list(self._external_input)

    @property
    def external_output(self) -> List[str]:
        return list(self._external_output)

    @property
    def operators(self) -> List[OperatorBase]:
        return list(self._operators)

    def _run_op(self, op: OperatorBase) -> bool:
        start = time.perf_counter()
        ok = op.run()
        duration_ms = (time.perf_counter() - start) * 1000
        if not ok:
            get_logger().error(
                "Operator failed",
                component="net",
                net_name=self._name,
                operation=op.type,
                net_position=op.net_position,
            )
        else:
            get_logger().debug(
                "Operator done",
                component="net",
                net_name=self._name,
                operation=op.type,
                duration_ms=duration_ms,
            )
        return ok

    def run(self) -> bool:
        """Run the net to completion. Returns False if any operator failed."""
        if not self.run_async():
            return False
        return self.wait()

    def run_async(self) -> bool:
        raise NotImplementedError

    def wait(self) -> bool:
        return True

    def supports_async(self) -> bool:
        return False

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self._name}', ops={len(self._operators)})"


class SimpleNet(NetBase):
    """Runs operators strictly in definition order."""

    def __init__(self, net_def: NetDef, ws: "Workspace"):
        super().__init__(net_def, ws)
        self._operators = self._instantiate_operators(net_def)

    def _run_all(self) -> bool:
        with get_logger().timed("Run complete", component="net", net_name=self._name) as run:
            for op in self._operators:
                if not self._run_op(op):
                    run["success"] = False
                    return False
        return True

    def run_async(self) -> bool:
        return self._run_all()


class AsyncSimpleNet(SimpleNet):
    """
    Definition order on a single worker thread.

    run_async() issues the run and returns; wait() blocks for its result
    and re-raises any exception raised by an operator.
    """

    def __init__(self, net_def: NetDef, ws: "Workspace"):
        super().__init__(net_def, ws)
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"meridian-{self._name}"
        )
        self._future: Optional[Future] = None

    def run_async(self) -> bool:
        if self._future is not None and not self.wait():
            get_logger().error(
                "Previous run failed before it was waited on",
                component="net",
                net_name=self._name,
            )
        self._future = self._executor.submit(self._run_all)
        return True

    def wait(self) -> bool:
        future, self._future = self._future, None
        if future is None:
            return True
        return future.result()

    def supports_async(self) -> bool:
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class DAGNet(NetBase):
    """
    Dependency-scheduled execution on num_workers threads.

    After an operator fails no new operator is scheduled; operators already
    running are allowed to finish.
    """

    def __init__(self, net_def: NetDef, ws: "Workspace"):
        super().__init__(net_def, ws)
        self._operators = self._instantiate_operators(net_def)
        self._parents, self._children = self._compute_dependencies(net_def)
        self._num_workers = max(1, net_def.num_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=self._num_workers, thread_name_prefix=f"meridian-{self._name}"
        )

    @staticmethod
    def _compute_dependencies(net_def: NetDef):
        parents: List[Set[int]] = [set() for _ in net_def.op]
        last_writer: Dict[str, int] = {}
        readers: Dict[str, List[int]] = {}
        for idx, op_def in enumerate(net_def.op):
            reads = list(op_def.input) + list(op_def.control_input)
            for name in reads:
                if name in last_writer:
                    parents[idx].add(last_writer[name])
            for name in op_def.output:
                if name in last_writer:
                    parents[idx].add(last_writer[name])
                parents[idx].update(r for r in readers.get(name, []) if r != idx)
            for name in reads:
                readers.setdefault(name, []).append(idx)
            for name in op_def.output:
                last_writer[name] = idx
                readers[name] = []
        children: List[List[int]] = [[] for _ in net_def.op]
        for idx, deps in enumerate(parents):
            for parent in sorted(deps):
                children[parent].append(idx)
        return parents, children

    def dependencies(self, idx: int) -> List[int]:
        """Indices of the operators op idx waits for."""
        return sorted(self._parents[idx])

    def run_async(self) -> bool:
        pending = [len(deps) for deps in self._parents]
        ready = [idx for idx, count in enumerate(pending) if count == 0]
        running: Dict[Future, int] = {}
        success = True
        error: Optional[BaseException] = None

        with get_logger().timed("Run complete", component="net", net_name=self._name) as run:
            while ready or running:
                if success and error is None:
                    for idx in ready:
                        future = self._executor.submit(self._run_op, self._operators[idx])
                        running[future] = idx
                ready = []
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    idx = running.pop(future)
                    exc = future.exception()
                    if exc is not None:
                        error = error or exc
                        continue
                    if not future.result():
                        success = False
                        continue
                    for child in self._children[idx]:
                        pending[child] -= 1
                        if pending[child] == 0:
                            ready.append(child)
            if error is not None:
                raise error
            run["success"] = success
        return success

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def register_builtin_net_types(registry: "NetTypeRegistry") -> None:
    registry.register("simple", SimpleNet)
    registry.register("async_simple", AsyncSimpleNet)
    registry.register("dag", DAGNet)


def create_net(net_def: NetDef, ws: "Workspace") -> Optional[NetBase]:
    """
    Build a net of net_def.type ("simple" when empty) against ws.

    Returns:
        The net, or None if the net type is not registered.

    Raises:
        NetConstructionError: If the net wiring is invalid.
    """
    net_type = net_def.type or DEFAULT_NET_TYPE
    factory = ws.context.net_types.get(net_type)
    if factory is None:
        logger.error(
            "Net type %s is not registered. Known types: %s",
            net_type, ws.context.net_types.keys(),
        )
        return None
    logger.debug("Creating net %s of type %s", net_def.name, net_type)
    return factory(net_def, ws)
