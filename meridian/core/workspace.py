# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Workspace

A scope owning named blobs and nets, optionally backed by a shared parent
workspace and by blobs forwarded from other workspaces.

Blob lookup order:
1. Local blobs
2. Forwarded blobs (name -> (workspace, name in that workspace))
3. The shared parent (recursively)

A name is never local and forwarded at the same time.

Example:
    ws = Workspace()
    ws.create_blob("x").get_mutable(Tensor).copy_from(np.ones(3))
    ws.create_net(net_def)
    ws.run_net(net_def.name)
"""

import logging
import signal
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from ..errors import NetConstructionError, OperatorCreationError, ValidationError
from .blob import Blob
from .context import DispatchContext, get_default_context
from .defs import NetDef, OperatorDef

if TYPE_CHECKING:
    from .net import NetBase

logger = logging.getLogger("meridian.core.workspace")

ShouldContinue = Callable[[int], bool]


class Workspace:
    """
    Owner of blobs and nets.

    Attributes:
        context: Dispatch context used to build operators and nets.
    """

    def __init__(
        self,
        shared: Optional["Workspace"] = None,
        context: Optional[DispatchContext] = None,
    ):
        self._blobs: Dict[str, Blob] = {}
        self._nets: Dict[str, "NetBase"] = {}
        self._shared = shared
        self._forwarded: Dict[str, Tuple["Workspace", str]] = {}
        self._last_failed_op_net_position = 0
        self._position_lock = threading.Lock()

        if context is not None:
            self.context = context
        elif shared is not None:
            self.context = shared.context
        else:
            self.context = get_default_context()

    @property
    def shared(self) -> Optional["Workspace"]:
        return self._shared

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def local_blobs(self) -> List[str]:
        return list(self._blobs)

    def blobs(self) -> List[str]:
        """Names visible from this workspace: local, forwarded, then parent."""
        names = list(self._blobs)
        for name, (owner, owner_name) in self._forwarded.items():
            if owner.has_blob(owner_name):
                names.append(name)
        if self._shared is not None:
            names.extend(self._shared.blobs())
        return names

    def has_blob(self, name: str) -> bool:
        if name in self._blobs:
            return True
        if name in self._forwarded:
            owner, owner_name = self._forwarded[name]
            return owner.has_blob(owner_name)
        if self._shared is not None:
            return self._shared.has_blob(name)
        return False

    def _find_blob(self, name: str) -> Optional[Blob]:
        blob = self._blobs.get(name)
        if blob is not None:
            return blob
        if name in self._forwarded:
            owner, owner_name = self._forwarded[name]
            return owner._find_blob(owner_name)
        if self._shared is not None:
            return self._shared._find_blob(name)
        return None

    def get_blob(self, name: str) -> Optional[Blob]:
        """Get a visible blob, or None (logged) if there is none."""
        blob = self._find_blob(name)
        if blob is None:
            logger.warning("Blob %s not in the workspace.", name)
        return blob

    def create_blob(self, name: str) -> Blob:
        """
        Create a local blob unless one is already visible under name.

        Existing content is never cleared.

        Raises:
            ValidationError: If name is forwarded and its source is gone.
        """
        if name in self._forwarded:
            owner, owner_name = self._forwarded[name]
            blob = owner._find_blob(owner_name)
            if blob is None:
                raise ValidationError(
                    f"Blob {name} is forwarded to {owner_name}, which no longer exists",
                    parameter="name",
                )
            return blob
        if self.has_blob(name):
            logger.debug("Blob %s already exists. Skipping.", name)
            return self._find_blob(name)
        logger.debug("Creating blob %s", name)
        blob = Blob()
        self._blobs[name] = blob
        return blob

    def create_local_blob(self, name: str) -> Blob:
        """Create a blob in this workspace even if the parent has one."""
        blob = self._blobs.get(name)
        if blob is None:
            if name in self._forwarded:
                raise ValidationError(
                    f"Blob {name} is forwarded and cannot be made local",
                    parameter="name",
                )
            blob = Blob()
            self._blobs[name] = blob
        return blob

    def remove_blob(self, name: str) -> bool:
        """Remove a local blob; returns False if there was none."""
        if self._blobs.pop(name, None) is None:
            logger.debug("Blob %s not exists. Skipping.", name)
            return False
        return True

    def add_blob_mapping(
        self,
        parent: "Workspace",
        forwarded_blobs: Dict[str, str],
        skip_defined_blobs: bool = False,
    ) -> None:
        """
        Forward blobs of parent into this workspace.

        Args:
            parent: Workspace holding the source blobs.
            forwarded_blobs: Local name -> name in parent.
            skip_defined_blobs: Skip names already visible here.

        Raises:
            ValidationError: If a source blob is missing or a forwarded
                name is redefined to another target.
        """
        if parent is None:
            raise ValidationError("Parent workspace must be specified", parameter="parent")
        for name, parent_name in forwarded_blobs.items():
            if not parent.has_blob(parent_name):
                raise ValidationError(
                    f"Invalid parent workspace blob {parent_name}",
                    parameter="forwarded_blobs",
                )
            target = parent._forwarded.get(parent_name, (parent, parent_name))
            if name in self._forwarded:
                if self._forwarded[name] != target:
                    raise ValidationError(
                        f"Redefinition of blob {name}", parameter="forwarded_blobs"
                    )
                continue
            if skip_defined_blobs and self.has_blob(name):
                continue
            if name in self._blobs:
                logger.warning(
                    "Blob %s is defined locally; not forwarding %s", name, parent_name
                )
                continue
            self._forwarded[name] = target

    # ------------------------------------------------------------------
    # Nets
    # ------------------------------------------------------------------

    def create_net(self, net_def: NetDef, overwrite: bool = False) -> Optional["NetBase"]:
        """
        Build a net and store it under its name.

        Returns:
            The net, or None if its type is unknown.

        Raises:
            ValidationError: If the name is empty, or taken and overwrite
                is False.
            NetConstructionError: If the net wiring is invalid.
        """
        from .net import create_net

        if not net_def.name:
            raise ValidationError("Net name must be set", parameter="name")
        if net_def.name in self._nets:
            if not overwrite:
                raise ValidationError(
                    f"I respectfully refuse to overwrite an existing net of the "
                    f"same name \"{net_def.name}\", unless you explicitly specify "
                    f"overwrite=True.",
                    parameter="overwrite",
                )
            self.delete_net(net_def.name)

        net = create_net(net_def, self)
        if net is None:
            logger.error("Error when creating the network. Maybe net type: [%s] does not exist", net_def.type)
            return None
        self._nets[net_def.name] = net
        return net

    def get_net(self, name: str) -> Optional["NetBase"]:
        return self._nets.get(name)

    def has_net(self, name: str) -> bool:
        return name in self._nets

    def nets(self) -> List[str]:
        return list(self._nets)

    def delete_net(self, name: str) -> None:
        net = self._nets.pop(name, None)
        if net is not None:
            net.close()

    def run_net(self, name: str) -> bool:
        net = self._nets.get(name)
        if net is None:
            logger.error("Network %s does not exist yet.", name)
            return False
        return net.run()

    def run_net_iterations(
        self,
        name: str,
        num_iterations: int,
        should_continue: Optional[ShouldContinue] = None,
    ) -> bool:
        """
        Run a net repeatedly.

        should_continue is called with the iteration index before every
        run; returning False stops the loop early (not a failure).

        Returns:
            False if the net does not exist or any run fails.
        """
        net = self._nets.get(name)
        if net is None:
            logger.error("Network %s does not exist yet.", name)
            return False
        for iteration in range(num_iterations):
            if should_continue is not None and not should_continue(iteration):
                logger.info("Stopping net %s after %d iterations", name, iteration)
                break
            if not net.run():
                logger.error("Net %s failed at iteration %d", name, iteration)
                return False
        return True

    def run_operator_once(self, op_def: OperatorDef) -> bool:
        from .operator import create_operator

        try:
            op = create_operator(op_def, self)
        except OperatorCreationError as err:
            logger.error("Cannot create operator of type %s: %s", op_def.type, err.message)
            return False
        if not op.run():
            logger.error("Error when running operator %s", op_def.type)
            return False
        return True

    def run_net_once(self, net_def: NetDef) -> bool:
        """
        Build a temporary net, run it once and discard it.

        Raises:
            NetConstructionError: If the net cannot be constructed.
        """
        from .net import create_net

        net = create_net(net_def, self)
        if net is None:
            raise NetConstructionError(
                f"Could not create net: {net_def.name}", net_name=net_def.name
            )
        try:
            if not net.run():
                logger.error("Error when running network %s", net_def.name)
                return False
        finally:
            net.close()
        return True

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def last_failed_op_net_position(self) -> int:
        with self._position_lock:
            return self._last_failed_op_net_position

    @last_failed_op_net_position.setter
    def last_failed_op_net_position(self, position: int) -> None:
        with self._position_lock:
            self._last_failed_op_net_position = position

    def __repr__(self) -> str:
        return (
            f"Workspace(blobs={len(self._blobs)}, nets={list(self._nets)}, "
            f"shared={self._shared is not None})"
        )


class StopOnSignal:
    """
    should_continue predicate that turns False once a signal arrives.

    Example:
        stop = StopOnSignal()
        ws.run_net_iterations("train", 1000, should_continue=stop)
        stop.restore()
    """

    def __init__(self, signals=(signal.SIGINT, signal.SIGTERM)):
        self._received: Optional[int] = None
        self._previous = {}
        for signum in signals:
            self._previous[signum] = signal.signal(signum, self._handle)

    def _handle(self, signum, frame) -> None:
        logger.warning("Received signal %d, stopping after the current iteration", signum)
        self._received = signum

    @property
    def received(self) -> Optional[int]:
        return self._received

    def __call__(self, iteration: int) -> bool:
        return self._received is None

    def restore(self) -> None:
        """Reinstall the handlers that were active before."""
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous = {}
