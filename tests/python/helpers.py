# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Blob feed/fetch helpers shared by the Meridian test modules.
"""

import numpy as np

from meridian import Tensor


def feed(ws, name, value, dtype=np.float32):
    """Create blob name in ws holding value."""
    tensor = ws.create_blob(name).get_mutable(Tensor)
    tensor.copy_from(np.asarray(value, dtype=dtype))
    return tensor


def fetch(ws, name):
    """Copy of the tensor held by blob name."""
    return ws.get_blob(name).get(Tensor).numpy()
