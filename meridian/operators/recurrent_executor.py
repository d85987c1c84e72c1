# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Recurrent Network Executor

Runs the timesteps of a RecurrentNetwork after they were bound to their
step workspaces with ensure_timestep_initialized().

Timesteps run concurrently, in waves of at most max_parallel_timesteps,
only when no timestep reads rows another timestep writes: every link has
a window of 1 and no external buffer is linked more than once. Otherwise
(any recurrent state) timesteps run in order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Dict, List, Optional

import numpy as np

from ..core.defs import NetDef
from ..core.tensor import Tensor
from ..errors import NetConstructionError, ValidationError

if TYPE_CHECKING:
    from ..core.workspace import Workspace
    from .recurrent_network_op import Link

logger = logging.getLogger("meridian.operators.recurrent_executor")

DEFAULT_MAX_PARALLEL_TIMESTEPS = 8


def update_timestep_blob(ws: "Workspace", blob_name: str, t: int) -> None:
    """Write t into the int32 timestep blob of ws."""
    tensor = ws.create_blob(blob_name).get_mutable(Tensor)
    tensor.resize(1)
    tensor.mutable_data(np.int32)[0] = t


class RecurrentNetworkExecutor:
    """
    Timestep scheduler for a step net.

    Example:
        executor = RecurrentNetworkExecutor(step_net_def, mapping, "timestep", links)
        for t in range(seq_len):
            executor.ensure_timestep_initialized(t, step_workspaces[t % 4])
        executor.run(seq_len)
    """

    def __init__(
        self,
        step_net_def: NetDef,
        recurrent_mapping: Dict[str, str],
        timestep_blob: str,
        links: List["Link"],
    ):
        self._step_net_def = step_net_def.clone()
        if self._step_net_def.type == "rnn":
            self._step_net_def.type = "simple"
        self._recurrent_mapping = dict(recurrent_mapping)
        self._timestep_blob = timestep_blob
        self._max_parallel_timesteps: Optional[int] = None
        self._timestep_workspaces: Dict[int, "Workspace"] = {}

        externals = [link.external for link in links]
        self._parallel = (
            not self._recurrent_mapping
            and all(link.window == 1 for link in links)
            and len(externals) == len(set(externals))
        )
        if self._recurrent_mapping:
            logger.debug("Recurrent mapping: %s", self._recurrent_mapping)

    @property
    def recurrent_mapping(self) -> Dict[str, str]:
        return dict(self._recurrent_mapping)

    @property
    def parallel(self) -> bool:
        """Whether timesteps may run concurrently."""
        return self._parallel

    @property
    def max_parallel_timesteps(self) -> Optional[int]:
        return self._max_parallel_timesteps

    def set_max_parallel_timesteps(self, num: int) -> None:
        self._max_parallel_timesteps = num

    def ensure_timestep_initialized(self, t: int, ws: "Workspace") -> None:
        """
        Bind timestep t to ws, creating the step net there if needed.

        Raises:
            NetConstructionError: If the step net cannot be created.
        """
        self._timestep_workspaces[t] = ws
        if ws.get_net(self._step_net_def.name) is None:
            update_timestep_blob(ws, self._timestep_blob, t)
            if ws.create_net(self._step_net_def) is None:
                raise NetConstructionError(
                    "Step Net construction failure", net_name=self._step_net_def.name
                )

    def _run_timestep(self, t: int) -> bool:
        ws = self._timestep_workspaces[t]
        update_timestep_blob(ws, self._timestep_blob, t)
        if not ws.run_net(self._step_net_def.name):
            logger.error("Step net %s failed at timestep %d", self._step_net_def.name, t)
            return False
        return True

    def run(self, seq_len: int) -> bool:
        """Run timesteps [0, seq_len). Returns False if any step fails."""
        for t in range(seq_len):
            if t not in self._timestep_workspaces:
                raise ValidationError(f"Timestep {t} was not initialized", parameter="seq_len")

        if not self._parallel or seq_len <= 1:
            return all(self._run_timestep(t) for t in range(seq_len))

        wave = self._max_parallel_timesteps or min(seq_len, DEFAULT_MAX_PARALLEL_TIMESTEPS)
        with ThreadPoolExecutor(
            max_workers=wave, thread_name_prefix="meridian-rnn"
        ) as pool:
            for start in range(0, seq_len, wave):
                timesteps = range(start, min(start + wave, seq_len))
                if not all(list(pool.map(self._run_timestep, timesteps))):
                    return False
        return True
