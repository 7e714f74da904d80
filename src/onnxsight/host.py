"""Minimal host contract: operators, a per-frame context, and a chain.

The real host framework (scheduler, texture allocation, rendering) lives
outside this package. These types describe the part of it detectors rely on
and are enough to drive detectors from scripts and tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from onnxsight.ml.pixels import CpuImage, GpuDevice, GpuQueue, Texture

logger = logging.getLogger(__name__)

OpT = TypeVar("OpT", bound="Operator")


class Operator:
    """Base class for anything the chain schedules."""

    def name(self) -> str:
        return type(self).__name__

    def initialize(self, ctx: Context) -> None:
        """Called once before the first frame."""

    def process(self, ctx: Context) -> None:
        """Called once per frame."""

    def cleanup(self) -> None:
        """Called once when the chain shuts down."""

    # Image source interface; operators without image output return None.

    def cpu_pixels(self) -> CpuImage | None:
        return None

    def output_texture(self) -> Texture | None:
        return None


@dataclass
class Context:
    """What the host hands to operators each call."""

    device: GpuDevice | None = None
    queue: GpuQueue | None = None
    chain: Chain | None = None
    frame: int = 0


@dataclass(frozen=True)
class CpuFrame:
    width: int
    height: int
    channels: int
    pixels: NDArray[np.uint8]


class StillImage(Operator):
    """Publishes a fixed image through the direct CPU path."""

    def __init__(self, image: NDArray[Any] | None = None) -> None:
        self._frame: CpuFrame | None = None
        if image is not None:
            self.set_image(image)

    def set_image(self, image: NDArray[Any]) -> StillImage:
        arr = np.asarray(image, dtype=np.uint8)
        if arr.ndim == 2:
            arr = arr[:, :, None]
        height, width, channels = arr.shape
        self._frame = CpuFrame(width, height, channels, np.ascontiguousarray(arr).reshape(-1))
        return self

    def cpu_pixels(self) -> CpuFrame | None:
        return self._frame


@dataclass
class Chain:
    """Ordered set of named operators driven by the host frame loop."""

    _operators: dict[str, Operator] = field(default_factory=dict)

    def add(self, name: str, operator: OpT) -> OpT:
        if name in self._operators:
            raise KeyError(f"Operator already registered: {name}")
        self._operators[name] = operator
        return operator

    def get(self, name: str) -> Operator:
        try:
            return self._operators[name]
        except KeyError:
            raise KeyError(f"Unknown operator: {name}") from None

    def names(self) -> list[str]:
        return list(self._operators)

    def initialize(self, ctx: Context) -> None:
        ctx.chain = self
        for name, op in self._operators.items():
            logger.debug("Initializing %s (%s)", name, op.name())
            op.initialize(ctx)

    def process(self, ctx: Context) -> None:
        for op in self._operators.values():
            op.process(ctx)
        ctx.frame += 1

    def cleanup(self) -> None:
        for op in self._operators.values():
            op.cleanup()
