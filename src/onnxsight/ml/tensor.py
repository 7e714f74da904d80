"""Tensor storage and model schema types.

A ``Tensor`` owns a flat numpy buffer plus a shape. The buffer is allocated
once per model load and rewritten in place every frame; the backend reads it
through a reshaped view, so no per-frame copies are made on the input side.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from onnxsight.ml.exceptions import TensorShapeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


class ElementType(StrEnum):
    FLOAT32 = "float32"
    UINT8 = "uint8"
    INT32 = "int32"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @classmethod
    def from_onnx(cls, type_str: str) -> ElementType:
        """Map an onnxruntime type string such as ``tensor(uint8)``.

        Anything other than uint8/int32 is treated as float32.
        """
        if type_str == "tensor(uint8)":
            return cls.UINT8
        if type_str == "tensor(int32)":
            return cls.INT32
        return cls.FLOAT32


def element_count(shape: Sequence[int]) -> int:
    """Return the product of ``shape``; an empty shape holds no elements."""
    if len(shape) == 0:
        return 0
    return math.prod(int(d) for d in shape)


def resolve_dims(shape: Sequence[object]) -> tuple[int, ...]:
    """Bind dynamic dimensions (negative, symbolic or None) to 1."""
    resolved: list[int] = []
    for dim in shape:
        if isinstance(dim, (int, np.integer)) and int(dim) > 0:
            resolved.append(int(dim))
        else:
            resolved.append(1)
    return tuple(resolved)


class Tensor:
    """Rectangular numeric array used for model I/O."""

    def __init__(
        self,
        shape: Sequence[int] = (),
        element_type: ElementType = ElementType.FLOAT32,
    ) -> None:
        self.element_type = element_type
        self._shape: tuple[int, ...] = tuple(int(d) for d in shape)
        self.data: NDArray = np.zeros(element_count(self._shape), dtype=element_type.dtype)

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    def size(self) -> int:
        """Total number of elements implied by the shape."""
        return element_count(self._shape)

    def reshape(self, shape: Sequence[int]) -> None:
        """Change the shape without touching storage.

        Raises:
            TensorShapeError: If the new shape holds a different number of elements.
        """
        new_shape = tuple(int(d) for d in shape)
        if element_count(new_shape) != self.size():
            raise TensorShapeError(
                f"Tensor reshape: size mismatch ({self._shape} -> {new_shape})"
            )
        self._shape = new_shape

    def resize(self, shape: Sequence[int]) -> None:
        """Set a new shape, reallocating storage only if the element count changes."""
        new_shape = tuple(int(d) for d in shape)
        count = element_count(new_shape)
        if self.data.size != count:
            self.data = np.zeros(count, dtype=self.element_type.dtype)
        self._shape = new_shape

    def fill(self, value: float) -> None:
        self.data.fill(value)

    def assign(self, values: NDArray) -> None:
        """Copy ``values`` in, adopting their shape."""
        arr = np.asarray(values)
        self.resize(arr.shape)
        np.copyto(self.data, arr.reshape(-1), casting="unsafe")

    def as_array(self) -> NDArray:
        """Return a view of the storage in the tensor's shape."""
        return self.data.reshape(self._shape)

    def __getitem__(self, index: int) -> float:
        return self.data[index].item()

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return f"Tensor(shape={list(self._shape)}, element_type={self.element_type.value})"


@dataclass(frozen=True)
class TensorInfo:
    """Name, resolved shape and element type of one model input or output."""

    name: str
    shape: tuple[int, ...]
    element_type: ElementType = ElementType.FLOAT32


@dataclass(frozen=True)
class ModelSchema:
    """Inputs and outputs of a loaded model, in model order."""

    inputs: tuple[TensorInfo, ...] = field(default_factory=tuple)
    outputs: tuple[TensorInfo, ...] = field(default_factory=tuple)
