"""Frame → tensor conversion with bilinear resampling.

The destination tensor's shape decides everything: layout (NHWC when
``shape[1] > 4``, otherwise NCHW), target size and channel count. Values are
interpolated in [0, 1] and then encoded for the tensor's element type.
Integer tensors take the nearest integer to ``v * 255`` rather than the
truncated value, so 8-bit input survives the round trip exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from onnxsight.ml.exceptions import PipelineError
from onnxsight.ml.pixels import ChannelOrder
from onnxsight.ml.tensor import ElementType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from onnxsight.ml.pixels import Frame
    from onnxsight.ml.tensor import Tensor

logger = logging.getLogger(__name__)


class Layout(StrEnum):
    NHWC = "nhwc"
    NCHW = "nchw"


class ValueRange(StrEnum):
    """Float encoding of [0, 1] samples. Integer tensors always use 0-255."""

    UNIT = "unit"
    SIGNED = "signed"


@dataclass(frozen=True)
class TensorGeometry:
    layout: Layout
    height: int
    width: int
    channels: int


def tensor_geometry(shape: Sequence[int]) -> TensorGeometry | None:
    """Read layout, size and channels from a 4-D image tensor shape."""
    if len(shape) < 4:
        return None
    if shape[1] > 4:
        return TensorGeometry(Layout.NHWC, int(shape[1]), int(shape[2]), int(shape[3]))
    return TensorGeometry(Layout.NCHW, int(shape[2]), int(shape[3]), int(shape[1]))


def image_shape(layout: Layout, height: int, width: int, channels: int) -> tuple[int, int, int, int]:
    """Build a batch-1 tensor shape for ``layout``."""
    if layout is Layout.NCHW:
        return (1, channels, height, width)
    return (1, height, width, channels)


def neutral_value(element_type: ElementType, value_range: ValueRange) -> float:
    """Mid-gray in the tensor's encoding."""
    if element_type is not ElementType.FLOAT32:
        return 128
    return 0.0 if value_range is ValueRange.SIGNED else 0.5


def bilinear_rgba(
    image: NDArray[np.uint8],
    width: int,
    height: int,
    channel_order: ChannelOrder = ChannelOrder.RGBA,
) -> NDArray[np.float32]:
    """Resample an (H, W, C) uint8 image to (height, width, 4) floats in [0, 1].

    Uses half-pixel-centred sampling with edge clamping. Missing channels read
    as 0 (alpha as 1) and BGRA input is swapped to RGBA.
    """
    src_h, src_w, src_c = image.shape

    xs = (np.arange(width, dtype=np.float64) + 0.5) * (src_w / width) - 0.5
    ys = (np.arange(height, dtype=np.float64) + 0.5) * (src_h / height) - 0.5
    x_floor = np.floor(xs)
    y_floor = np.floor(ys)
    fx = (xs - x_floor).astype(np.float32)[None, :, None]
    fy = (ys - y_floor).astype(np.float32)[:, None, None]

    x0 = np.clip(x_floor.astype(np.intp), 0, src_w - 1)
    x1 = np.clip(x_floor.astype(np.intp) + 1, 0, src_w - 1)
    y0 = np.clip(y_floor.astype(np.intp), 0, src_h - 1)
    y1 = np.clip(y_floor.astype(np.intp) + 1, 0, src_h - 1)

    def sample(rows: NDArray[np.intp], cols: NDArray[np.intp]) -> NDArray[np.float32]:
        return image[rows[:, None], cols[None, :]].astype(np.float32) / 255.0

    top = sample(y0, x0) * (1.0 - fx) + sample(y0, x1) * fx
    bottom = sample(y1, x0) * (1.0 - fx) + sample(y1, x1) * fx
    blended = top * (1.0 - fy) + bottom * fy

    rgba = np.zeros((height, width, 4), dtype=np.float32)
    rgba[..., 3] = 1.0
    used = min(src_c, 4)
    rgba[..., :used] = blended[..., :used]

    if channel_order is ChannelOrder.BGRA:
        rgba = rgba[..., [2, 1, 0, 3]]
    return rgba


def encode(values: NDArray[np.float32], element_type: ElementType, value_range: ValueRange) -> NDArray:
    """Map [0, 1] samples onto the numeric range of ``element_type``.

    Integer types round to nearest and saturate to [0, 255].
    """
    if element_type is ElementType.FLOAT32:
        if value_range is ValueRange.SIGNED:
            return values * 2.0 - 1.0
        return values
    return np.clip(np.rint(values * 255.0), 0, 255)


class TensorResampler:
    """Writes frames into preallocated image tensors."""

    def __init__(self, value_range: ValueRange = ValueRange.UNIT) -> None:
        self.value_range = value_range

    def resample(self, frame: Frame, tensor: Tensor) -> bool:
        """Fill ``tensor`` from ``frame``. Returns False if nothing was written."""
        geometry = tensor_geometry(tensor.shape)
        if geometry is None or geometry.width <= 0 or geometry.height <= 0:
            logger.debug("Tensor shape %s is not an image layout", tensor.shape)
            return False
        if tensor.data.size != tensor.size():
            return False

        try:
            image = frame.image()
        except PipelineError as exc:
            logger.debug("Cannot read frame: %s", exc)
            return False

        rgba = bilinear_rgba(image, geometry.width, geometry.height, frame.channel_order)
        encoded = encode(rgba, tensor.element_type, self.value_range)

        written = min(geometry.channels, 4)
        plane = geometry.height * geometry.width * geometry.channels
        if geometry.layout is Layout.NHWC:
            dest = tensor.data[:plane].reshape(geometry.height, geometry.width, geometry.channels)
            dest[..., :written] = encoded[..., :written]
        else:
            dest = tensor.data[:plane].reshape(geometry.channels, geometry.height, geometry.width)
            dest[:written] = np.moveaxis(encoded[..., :written], -1, 0)
        return True

    def fill_neutral(self, tensor: Tensor) -> None:
        tensor.fill(neutral_value(tensor.element_type, self.value_range))

    def convert(self, frame: Frame | None, tensor: Tensor) -> bool:
        """Resample ``frame`` into ``tensor``, falling back to mid-gray on failure."""
        if frame is not None and self.resample(frame, tensor):
            return True
        self.fill_neutral(tensor)
        return False
