# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tensor

A numpy-backed n-dimensional array held inside a Blob. Kernels write into
the tensor's existing buffer whenever the element count is unchanged, so
views handed out with share_external() keep observing the same memory
across runs.
"""

from typing import Optional, Sequence

import numpy as np

from ..errors import ValidationError


class Tensor:
    """
    Mutable tensor storage.

    A tensor either owns its buffer or is a view over rows of another
    tensor's buffer (see share_external). A view keeps a reference to its
    source so the underlying buffer lives at least as long as the view.

    Example:
        t = Tensor()
        t.resize(2, 3)
        t.mutable_data()[:] = 1.0

        row = Tensor()
        row.share_external(t, 1, 2)
        row.mutable_data()[:] = 5.0   # writes into t's second row
    """

    def __init__(
        self,
        dims: Optional[Sequence[int]] = None,
        dtype=np.float32,
    ):
        self._shape: tuple = tuple(int(d) for d in dims) if dims is not None else (0,)
        self._dtype = np.dtype(dtype)
        self._data: Optional[np.ndarray] = None
        self._source: Optional["Tensor"] = None
        if dims is not None:
            self._data = np.zeros(self._shape, dtype=self._dtype)

    @classmethod
    def from_array(cls, array) -> "Tensor":
        """Create a tensor owning a copy of array."""
        array = np.asarray(array)
        tensor = cls(dims=array.shape, dtype=array.dtype)
        np.copyto(tensor._data, array)
        return tensor

    @property
    def dims(self) -> tuple:
        return self._shape

    @property
    def shape(self) -> tuple:
        return self._shape

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        return int(np.prod(self._shape, dtype=np.int64))

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def is_view(self) -> bool:
        return self._source is not None

    @property
    def is_initialized(self) -> bool:
        return self._data is not None

    def dim(self, i: int) -> int:
        return self._shape[i]

    def resize(self, *dims: int) -> "Tensor":
        """
        Change the shape.

        The buffer is kept when the element count is unchanged; otherwise
        the tensor detaches from any shared buffer and is reallocated
        lazily by the next mutable_data() call.
        """
        if len(dims) == 1 and isinstance(dims[0], (tuple, list)):
            dims = tuple(dims[0])
        shape = tuple(int(d) for d in dims)
        if any(d < 0 for d in shape):
            raise ValidationError(f"Negative dimension in {shape}", parameter="dims")
        new_size = int(np.prod(shape, dtype=np.int64))
        if self._data is not None and new_size == self.size:
            self._data = self._data.reshape(shape)
        else:
            self._data = None
            self._source = None
        self._shape = shape
        return self

    def mutable_data(self, dtype=None) -> np.ndarray:
        """
        Get the writable buffer, allocating it on first use.

        Args:
            dtype: Requested element type. Changing the type of an owned
                buffer reallocates it; a view cannot change type.
        """
        dtype = self._dtype if dtype is None else np.dtype(dtype)
        if self._data is not None and self._data.dtype != dtype:
            if self._source is not None:
                raise ValidationError(
                    "Cannot change the element type of a shared tensor view",
                    expected=str(self._data.dtype),
                    received=str(dtype),
                )
            self._data = None
        if self._data is None:
            self._data = np.zeros(self._shape, dtype=dtype)
        self._dtype = dtype
        return self._data

    def data(self) -> np.ndarray:
        """Get the buffer for reading."""
        if self._data is None:
            raise ValidationError("Tensor has not been initialized")
        return self._data

    def numpy(self) -> np.ndarray:
        """Get a copy of the contents."""
        return np.array(self.data(), copy=True)

    def copy_from(self, array) -> "Tensor":
        """Resize to array's shape and copy its contents into this buffer."""
        array = np.asarray(array)
        self.resize(*array.shape)
        if self._source is not None:
            # a view keeps its element type
            np.copyto(self._data, array, casting="same_kind")
        else:
            np.copyto(self.mutable_data(array.dtype), array)
        return self

    def share_data(self, source: "Tensor") -> "Tensor":
        """Alias the whole of source's buffer."""
        return self.share_external(source, 0, source.dim(0) if source.ndim else 0)

    def share_external(self, source: "Tensor", start: int, stop: int) -> "Tensor":
        """
        Repoint this tensor onto rows [start, stop) of source.

        No data is copied: the result is a view over source's buffer with
        the leading dimension replaced by stop - start.
        """
        if source.ndim == 0:
            raise ValidationError("Cannot take a row view of a scalar tensor")
        rows = source.dim(0)
        if not 0 <= start <= stop <= rows:
            raise ValidationError(
                f"Row range [{start}, {stop}) out of bounds for {rows} rows",
                parameter="rows",
            )
        buffer = source.mutable_data()
        self._data = buffer[start:stop]
        self._shape = self._data.shape
        self._dtype = buffer.dtype
        self._source = source
        return self

    def shares_memory_with(self, other: "Tensor") -> bool:
        if self._data is None or other._data is None:
            return False
        return np.shares_memory(self._data, other._data)

    def __repr__(self) -> str:
        view = ", view" if self.is_view else ""
        return f"Tensor(dims={list(self._shape)}, dtype={self._dtype}{view})"
