"""Generic ONNX inference operator.

``InferenceAdapter`` loads a model, introspects its inputs and outputs,
preallocates tensors, and runs one inference per processed frame:

    frame (PixelAccessor) -> prepare_input -> run_inference -> decode_output

Detectors subclass it and override the three hooks ``on_model_loaded``,
``prepare_input`` and ``decode_output``. Nothing raised while loading or
running a model escapes ``initialize``/``process``; failures are logged and
the frame is skipped with the previously published state kept.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Self

import numpy as np

from onnxsight.config import get_settings
from onnxsight.host import Operator
from onnxsight.ml.exceptions import BackendError, ConfigurationError
from onnxsight.ml.model_manager import OnnxModelManager
from onnxsight.ml.pixels import PixelAccessor
from onnxsight.ml.resample import TensorResampler, ValueRange
from onnxsight.ml.tensor import ElementType, ModelSchema, Tensor, TensorInfo, resolve_dims

if TYPE_CHECKING:
    from pathlib import Path

    from onnxruntime import InferenceSession

    from onnxsight.config import Settings
    from onnxsight.host import Context
    from onnxsight.ml.pixels import Frame, ImageSource

logger = logging.getLogger(__name__)


def _format_shape(shape: tuple[int, ...]) -> str:
    return "x".join(str(d) for d in shape)


class InferenceAdapter(Operator):
    """Runs an ONNX model on the frames of an upstream image source."""

    description = "Run ONNX model inference on input texture"
    value_range = ValueRange.UNIT

    def __init__(
        self,
        settings: Settings | None = None,
        model_manager: OnnxModelManager | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._model_manager = model_manager
        self._model_path: str = ""
        self._source: ImageSource | None = None
        self._loaded = False
        self._session: InferenceSession | None = None

        self._inputs: tuple[TensorInfo, ...] = ()
        self._outputs: tuple[TensorInfo, ...] = ()
        self._input_tensors: list[Tensor] = []
        self._output_tensors: list[Tensor] = []

        self._pixels = PixelAccessor(
            poll_iterations=self._settings.readback_poll_iterations,
            poll_interval=self._settings.readback_poll_interval_ms / 1000.0,
        )
        self._resampler = TensorResampler(self.value_range)

    # -- Configuration ------------------------------------------------------

    def set_model(self, path: str | Path) -> None:
        self._model_path = str(path)

    def set_input(self, source: ImageSource | None) -> None:
        self._source = source

    def model(self, path: str | Path) -> Self:
        self.set_model(path)
        return self

    def input(self, source: ImageSource | None) -> Self:
        self.set_input(source)
        return self

    # -- Introspection ------------------------------------------------------

    def is_loaded(self) -> bool:
        return self._loaded

    def model_path(self) -> str:
        return self._model_path

    def input_count(self) -> int:
        return len(self._inputs)

    def output_count(self) -> int:
        return len(self._outputs)

    def input_name(self, i: int) -> str:
        return self._inputs[i].name if 0 <= i < len(self._inputs) else ""

    def output_name(self, i: int) -> str:
        return self._outputs[i].name if 0 <= i < len(self._outputs) else ""

    def input_shape(self, i: int) -> tuple[int, ...]:
        return self._inputs[i].shape if 0 <= i < len(self._inputs) else ()

    def output_shape(self, i: int) -> tuple[int, ...]:
        return self._outputs[i].shape if 0 <= i < len(self._outputs) else ()

    def input_type(self, i: int) -> ElementType:
        return self._inputs[i].element_type if 0 <= i < len(self._inputs) else ElementType.FLOAT32

    def output_tensor(self, i: int = 0) -> Tensor:
        """Output ``i`` as of the last successful inference (empty if out of range)."""
        if 0 <= i < len(self._output_tensors):
            return self._output_tensors[i]
        return Tensor()

    def schema(self) -> ModelSchema:
        return ModelSchema(inputs=self._inputs, outputs=self._outputs)

    # -- Operator interface -------------------------------------------------

    def initialize(self, ctx: Context) -> None:
        try:
            self._load()
        except (ConfigurationError, BackendError) as exc:
            logger.error("[%s] %s", self.name(), exc)
            self._loaded = False
            return
        self.on_model_loaded()

    def process(self, ctx: Context) -> None:
        if not self._loaded or self._source is None:
            return

        with self._pixels.acquire(ctx, self._source) as frame:
            if frame is None:
                return
            if self._input_tensors:
                self.prepare_input(ctx, self._input_tensors[0], frame)

        if not self.run_inference():
            return

        if self._output_tensors:
            self.decode_output(self._output_tensors[0])

    def cleanup(self) -> None:
        self._session = None
        self._loaded = False
        self._pixels.release()

    # -- Subclass hooks -----------------------------------------------------

    def on_model_loaded(self) -> None:
        """Adjust expected input geometry after the schema is known."""

    def prepare_input(self, ctx: Context, tensor: Tensor, frame: Frame) -> None:
        """Write ``frame`` into the first input tensor."""
        self._resampler.convert(frame, tensor)

    def decode_output(self, tensor: Tensor) -> None:
        """Interpret the first output tensor after a successful inference."""

    # -- Inference ----------------------------------------------------------

    def run_inference(self) -> bool:
        """Run the session on the current input tensors.

        Output tensors are only overwritten when the whole run succeeds.
        """
        if not self._loaded or self._session is None:
            return False

        # Views over the preallocated buffers; onnxruntime reads contiguous arrays in place.
        feeds = {info.name: tensor.as_array() for info, tensor in zip(self._inputs, self._input_tensors)}
        output_names = [info.name for info in self._outputs]

        try:
            results = self._session.run(output_names, feeds)
        except Exception:
            logger.exception("[%s] Inference error", self.name())
            return False

        for tensor, value in zip(self._output_tensors, results):
            tensor.assign(np.asarray(value, dtype=np.float32))
        return True

    # -- Internal -----------------------------------------------------------

    def _load(self) -> None:
        manager = self._model_manager or OnnxModelManager(self._settings)
        try:
            session = manager.create_session(self._model_path)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise BackendError(f"Failed to load model {self._model_path}: {exc}") from exc

        inputs = tuple(
            TensorInfo(arg.name, resolve_dims(arg.shape), ElementType.from_onnx(arg.type))
            for arg in session.get_inputs()
        )
        outputs = tuple(TensorInfo(arg.name, resolve_dims(arg.shape)) for arg in session.get_outputs())

        self._session = session
        self._inputs = inputs
        self._outputs = outputs
        self._input_tensors = [Tensor(info.shape, info.element_type) for info in inputs]
        self._output_tensors = [Tensor(info.shape) for info in outputs]
        self._loaded = True

        logger.info(
            "[%s] Loaded %s (inputs=%d, outputs=%d)",
            self.name(),
            self._model_path,
            len(inputs),
            len(outputs),
        )
        for i, info in enumerate(inputs):
            logger.info("  Input %d: %s (%s) [%s]", i, info.name, info.element_type, _format_shape(info.shape))
        for i, info in enumerate(outputs):
            logger.info("  Output %d: %s [%s]", i, info.name, _format_shape(info.shape))
