# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Blob

A named, type-erased cell owned by a Workspace. Operators hold Blob
objects (not names), so the cell itself is never re-created; only the
value it holds changes.
"""

from typing import Any, Optional, Type, TypeVar

from ..errors import ValidationError

T = TypeVar("T")


class Blob:
    """
    Holds exactly one value at a time (a Tensor or any other payload).

    Example:
        blob = ws.create_blob("x")
        tensor = blob.get_mutable(Tensor)
        tensor.copy_from(np.ones(3))
        assert blob.get(Tensor) is tensor
    """

    def __init__(self):
        self._value: Any = None

    @property
    def is_empty(self) -> bool:
        return self._value is None

    @property
    def type_name(self) -> str:
        return "nullptr" if self._value is None else type(self._value).__name__

    def is_type(self, cls: Type) -> bool:
        return isinstance(self._value, cls)

    def get(self, cls: Optional[Type[T]] = None) -> T:
        """
        Get the held value.

        Raises:
            ValidationError: If the blob is empty or holds another type.
        """
        if self._value is None:
            raise ValidationError("Blob is empty", expected=getattr(cls, "__name__", None))
        if cls is not None and not isinstance(self._value, cls):
            raise ValidationError(
                "Blob holds a different type",
                expected=cls.__name__,
                received=self.type_name,
            )
        return self._value

    def get_mutable(self, cls: Type[T]) -> T:
        """
        Get the held value as cls, replacing it with cls() if the blob is
        empty or holds another type.
        """
        if not isinstance(self._value, cls):
            self._value = cls()
        return self._value

    def reset(self, value: Any) -> Any:
        """Replace the held value."""
        self._value = value
        return value

    def __repr__(self) -> str:
        return f"Blob(type={self.type_name})"
