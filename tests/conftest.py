"""Shared fakes: an onnxruntime-like session and GPU readback objects."""

from __future__ import annotations

from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest

from onnxsight.config import Settings
from onnxsight.host import Context, StillImage
from onnxsight.ml.pixels import MapStatus, aligned_bytes_per_row

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


# ---------------------------------------------------------------------------
# Inference backend
# ---------------------------------------------------------------------------


def node(name: str, shape: Sequence[Any], type_str: str = "tensor(float)") -> SimpleNamespace:
    """Stand-in for onnxruntime.NodeArg."""
    return SimpleNamespace(name=name, shape=list(shape), type=type_str)


class FakeSession:
    """Records feeds and returns canned outputs like InferenceSession.run."""

    def __init__(
        self,
        inputs: list[SimpleNamespace],
        outputs: list[SimpleNamespace],
        results: list[np.ndarray] | None = None,
    ) -> None:
        self._inputs = inputs
        self._outputs = outputs
        self.results = results or []
        self.error: Exception | None = None
        self.feeds: list[dict[str, np.ndarray]] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return self._inputs

    def get_outputs(self) -> list[SimpleNamespace]:
        return self._outputs

    def run(self, output_names: list[str], feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.feeds.append({name: np.array(value, copy=True) for name, value in feeds.items()})
        if self.error is not None:
            raise self.error
        return self.results


class FakeModelManager:
    """Hands out a prepared session, or raises a prepared error."""

    def __init__(self, session: FakeSession | None = None, error: Exception | None = None) -> None:
        self.session = session
        self.error = error
        self.references: list[str] = []

    def create_session(self, reference: str) -> FakeSession:
        self.references.append(reference)
        if self.error is not None:
            raise self.error
        assert self.session is not None
        return self.session


# ---------------------------------------------------------------------------
# GPU readback
# ---------------------------------------------------------------------------


class FakeTexture:
    def __init__(self, rgba: np.ndarray, fmt: str = "rgba8unorm") -> None:
        self.rgba = np.asarray(rgba, dtype=np.uint8)
        self.height, self.width = self.rgba.shape[:2]
        self.format = fmt


class FakeBuffer:
    def __init__(self, device: FakeDevice, size: int) -> None:
        self.device = device
        self.size = size
        self.storage = bytearray(size)
        self.unmap_calls = 0
        self.destroyed = False

    def map_read(self, callback: Callable[[MapStatus], None]) -> None:
        if self.device.map_status is not None:
            self.device.pending.append(lambda: callback(self.device.map_status))

    def mapped_range(self) -> bytes:
        return bytes(self.storage)

    def unmap(self) -> None:
        self.unmap_calls += 1

    def destroy(self) -> None:
        self.destroyed = True


class FakeDevice:
    """Fires queued callbacks on poll(); set flags to None to simulate hangs."""

    def __init__(self) -> None:
        self.buffers: list[FakeBuffer] = []
        self.pending: list[Callable[[], None]] = []
        self.map_status: MapStatus | None = MapStatus.SUCCESS
        self.polls = 0

    def create_readback_buffer(self, size: int) -> FakeBuffer:
        buffer = FakeBuffer(self, size)
        self.buffers.append(buffer)
        return buffer

    def poll(self) -> None:
        self.polls += 1
        pending, self.pending = self.pending, []
        for callback in pending:
            callback()


class FakeQueue:
    def __init__(self, device: FakeDevice) -> None:
        self.device = device
        self.work_done = True
        self.copies: list[tuple[int, int, int]] = []

    def copy_texture_to_buffer(
        self, texture: FakeTexture, buffer: FakeBuffer, bytes_per_row: int, width: int, height: int
    ) -> None:
        assert bytes_per_row == aligned_bytes_per_row(width)
        self.copies.append((bytes_per_row, width, height))
        for y in range(height):
            row = texture.rgba[y].tobytes()
            buffer.storage[y * bytes_per_row : y * bytes_per_row + len(row)] = row

    def submit(self) -> None:
        pass

    def on_submitted_work_done(self, callback: Callable[[], None]) -> None:
        if self.work_done:
            self.device.pending.append(callback)


class TextureSource:
    """Upstream operator that only exposes a GPU texture."""

    def __init__(self, texture: FakeTexture | None) -> None:
        self.texture = texture

    def cpu_pixels(self) -> None:
        return None

    def output_texture(self) -> FakeTexture | None:
        return self.texture


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Any) -> Settings:
    return Settings(models_dir=str(tmp_path), readback_poll_interval_ms=0.0)


@pytest.fixture()
def ctx() -> Context:
    return Context()


@pytest.fixture()
def gpu_ctx() -> Context:
    device = FakeDevice()
    return Context(device=device, queue=FakeQueue(device))


@pytest.fixture()
def gray_source() -> StillImage:
    return StillImage(np.full((48, 64, 4), 128, dtype=np.uint8))
