"""CPU access to upstream frames.

Two paths, tried in order:

1. Direct CPU path: the source already keeps decoded pixels in host memory
   (``cpu_pixels()``), which are used as-is.
2. GPU readback path: the source's ``output_texture()`` is copied into a
   mappable buffer whose row pitch is padded to 256 bytes, the queue is
   polled until the copy lands, and the buffer is mapped for reading.

The GPU objects are duck-typed: anything exposing the methods in the
protocols below (a wgpu binding, or a test double) can be used.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from onnxsight.ml.exceptions import PipelineError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

ROW_ALIGNMENT: int = 256
BYTES_PER_PIXEL: int = 4


class ChannelOrder(StrEnum):
    RGBA = "rgba"
    BGRA = "bgra"


class TextureFormat(StrEnum):
    RGBA8_UNORM = "rgba8unorm"
    RGBA8_UNORM_SRGB = "rgba8unorm-srgb"
    BGRA8_UNORM = "bgra8unorm"
    BGRA8_UNORM_SRGB = "bgra8unorm-srgb"


_FORMAT_ORDER: dict[str, ChannelOrder] = {
    TextureFormat.RGBA8_UNORM: ChannelOrder.RGBA,
    TextureFormat.RGBA8_UNORM_SRGB: ChannelOrder.RGBA,
    TextureFormat.BGRA8_UNORM: ChannelOrder.BGRA,
    TextureFormat.BGRA8_UNORM_SRGB: ChannelOrder.BGRA,
}


class MapStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Upstream and GPU contracts
# ---------------------------------------------------------------------------


class CpuImage(Protocol):
    """Row-major 8-bit image kept in host memory."""

    width: int
    height: int
    channels: int
    pixels: Any


class Texture(Protocol):
    width: int
    height: int
    format: str


class ImageSource(Protocol):
    """Anything a detector can take frames from."""

    def cpu_pixels(self) -> CpuImage | None: ...

    def output_texture(self) -> Texture | None: ...


class ReadbackBuffer(Protocol):
    def map_read(self, callback: Callable[[MapStatus], None]) -> None: ...

    def mapped_range(self) -> Any: ...

    def unmap(self) -> None: ...

    def destroy(self) -> None: ...


class GpuDevice(Protocol):
    def create_readback_buffer(self, size: int) -> ReadbackBuffer: ...

    def poll(self) -> None: ...


class GpuQueue(Protocol):
    def copy_texture_to_buffer(
        self, texture: Texture, buffer: ReadbackBuffer, bytes_per_row: int, width: int, height: int
    ) -> None: ...

    def submit(self) -> None: ...

    def on_submitted_work_done(self, callback: Callable[[], None]) -> None: ...


class GpuContext(Protocol):
    device: GpuDevice | None
    queue: GpuQueue | None


# ---------------------------------------------------------------------------
# Frame
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Frame:
    """A CPU-addressable frame: flat 8-bit storage plus its geometry."""

    width: int
    height: int
    stride: int
    channels: int
    channel_order: ChannelOrder
    pixels: NDArray[np.uint8]

    def image(self) -> NDArray[np.uint8]:
        """Return an (H, W, C) view honouring the row stride.

        Raises:
            PipelineError: If the geometry is empty or the buffer is too short.
        """
        if self.width <= 0 or self.height <= 0 or self.channels <= 0:
            raise PipelineError(f"Empty frame ({self.width}x{self.height}x{self.channels})")
        if self.stride < self.width * self.channels:
            raise PipelineError(f"Row stride {self.stride} is smaller than one row of pixels")

        needed = (self.height - 1) * self.stride + self.width * self.channels
        flat = np.ascontiguousarray(self.pixels, dtype=np.uint8).reshape(-1)
        if flat.size < needed:
            raise PipelineError(f"Pixel buffer holds {flat.size} bytes, frame needs {needed}")

        return np.lib.stride_tricks.as_strided(
            flat,
            shape=(self.height, self.width, self.channels),
            strides=(self.stride, self.channels, 1),
            writeable=False,
        )


def aligned_bytes_per_row(width: int) -> int:
    """Row pitch for a ``width``-pixel RGBA8 texture copy, padded to 256 bytes."""
    unpadded = width * BYTES_PER_PIXEL
    return (unpadded + ROW_ALIGNMENT - 1) // ROW_ALIGNMENT * ROW_ALIGNMENT


# ---------------------------------------------------------------------------
# Accessor
# ---------------------------------------------------------------------------


class PixelAccessor:
    """Turns an upstream source into a ``Frame`` for the current tick.

    Owns a single readback buffer that is reused across frames and only
    reallocated when a larger texture comes through.
    """

    def __init__(
        self,
        poll_iterations: int = 100,
        poll_interval: float = 0.001,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._poll_iterations = poll_iterations
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._buffer: ReadbackBuffer | None = None
        self._buffer_size: int = 0

    @property
    def readback_buffer_size(self) -> int:
        return self._buffer_size

    @contextmanager
    def acquire(self, ctx: GpuContext | None, source: ImageSource | None) -> Iterator[Frame | None]:
        """Yield the current frame, or None when it has to be dropped.

        A readback buffer mapped for this frame is unmapped when the block exits.
        """
        frame: Frame | None = None
        mapped = False
        try:
            frame, mapped = self._acquire(ctx, source)
        except PipelineError as exc:
            logger.debug("Dropping frame: %s", exc)

        try:
            yield frame
        finally:
            if mapped and self._buffer is not None:
                self._buffer.unmap()

    def release(self) -> None:
        """Destroy the cached readback buffer."""
        if self._buffer is not None:
            self._buffer.destroy()
            self._buffer = None
            self._buffer_size = 0

    # -- Internal -----------------------------------------------------------

    def _acquire(self, ctx: GpuContext | None, source: ImageSource | None) -> tuple[Frame, bool]:
        if source is None:
            raise PipelineError("No upstream source")

        cpu = source.cpu_pixels()
        if cpu is not None:
            return self._from_cpu(cpu), False

        texture = source.output_texture()
        if texture is None:
            raise PipelineError("Source provides neither CPU pixels nor a texture")
        return self._read_back(ctx, texture), True

    @staticmethod
    def _from_cpu(cpu: CpuImage) -> Frame:
        pixels = np.asarray(cpu.pixels, dtype=np.uint8).reshape(-1)
        if cpu.width <= 0 or cpu.height <= 0 or pixels.size == 0:
            raise PipelineError("Source published an empty CPU frame")
        return Frame(
            width=cpu.width,
            height=cpu.height,
            stride=cpu.width * cpu.channels,
            channels=cpu.channels,
            channel_order=ChannelOrder.RGBA,
            pixels=pixels,
        )

    def _read_back(self, ctx: GpuContext | None, texture: Texture) -> Frame:
        if ctx is None or ctx.device is None or ctx.queue is None:
            raise PipelineError("No GPU device/queue available for readback")

        order = _FORMAT_ORDER.get(str(texture.format))
        if order is None:
            raise PipelineError(f"Unsupported texture format for readback: {texture.format}")

        width, height = int(texture.width), int(texture.height)
        if width <= 0 or height <= 0:
            raise PipelineError(f"Empty texture ({width}x{height})")

        bytes_per_row = aligned_bytes_per_row(width)
        size = bytes_per_row * height
        buffer = self._ensure_buffer(ctx.device, size)

        ctx.queue.copy_texture_to_buffer(texture, buffer, bytes_per_row, width, height)
        ctx.queue.submit()

        work_done: list[bool] = []
        ctx.queue.on_submitted_work_done(lambda: work_done.append(True))
        if not self._wait(ctx.device, lambda: bool(work_done)):
            logger.warning("GPU queue did not finish within %d polls", self._poll_iterations)
            raise PipelineError("Timed out waiting for GPU queue")

        statuses: list[MapStatus] = []
        buffer.map_read(statuses.append)
        if not self._wait(ctx.device, lambda: bool(statuses)):
            # Cancels the pending map so the buffer is usable next frame.
            buffer.unmap()
            logger.warning("Readback buffer was not mapped within %d polls", self._poll_iterations)
            raise PipelineError("Timed out mapping readback buffer")
        if statuses[0] != MapStatus.SUCCESS:
            raise PipelineError(f"Readback buffer map failed: {statuses[0]}")

        pixels = np.frombuffer(buffer.mapped_range(), dtype=np.uint8)[:size]
        return Frame(
            width=width,
            height=height,
            stride=bytes_per_row,
            channels=BYTES_PER_PIXEL,
            channel_order=order,
            pixels=pixels,
        )

    def _ensure_buffer(self, device: GpuDevice, size: int) -> ReadbackBuffer:
        if self._buffer is None or self._buffer_size < size:
            if self._buffer is not None:
                self._buffer.destroy()
            self._buffer = device.create_readback_buffer(size)
            self._buffer_size = size
            logger.debug("Allocated %d-byte readback buffer", size)
        return self._buffer

    def _wait(self, device: GpuDevice, is_done: Callable[[], bool]) -> bool:
        for _ in range(self._poll_iterations):
            device.poll()
            if is_done():
                return True
            self._sleep(self._poll_interval)
        return is_done()
