"""BlazeFace face detection.

Detects faces with Google's BlazeFace front model and reports a normalized
bounding box, six landmarks (eyes, nose, mouth, ears) and a confidence per
face. The model regresses offsets relative to 896 fixed anchors; decoding adds
them back, filters by score, and prunes overlaps with greedy NMS.

Output layouts understood:

- two tensors: regressors ``[1, 896, 16]`` and scores ``[1, 896, 1]``;
- four tensors: per-feature-map scores (512, 384) and regressors
  (512x16, 384x16);
- one tensor ``[1, 896, 17]`` with the score logit last.

Tensors are matched by element count, so export order does not matter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Self

import numpy as np

from onnxsight.ml.inference import InferenceAdapter
from onnxsight.ml.resample import Layout, ValueRange, image_shape, tensor_geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from onnxsight.config import Settings
    from onnxsight.host import Context
    from onnxsight.ml.model_manager import OnnxModelManager
    from onnxsight.ml.pixels import Frame
    from onnxsight.ml.tensor import Tensor

logger = logging.getLogger(__name__)

NUM_LANDMARKS: int = 6
REGRESSOR_VALUES: int = 4 + NUM_LANDMARKS * 2
INPUT_SIZE: int = 128

# (grid size, anchors per cell) for the two BlazeFace feature maps
FEATURE_MAPS: tuple[tuple[int, int], ...] = ((16, 2), (8, 6))
NUM_ANCHORS: int = sum(g * g * n for g, n in FEATURE_MAPS)


class FaceLandmark(IntEnum):
    RIGHT_EYE = 0
    LEFT_EYE = 1
    NOSE = 2
    MOUTH = 3
    RIGHT_EAR = 4
    LEFT_EAR = 5


@dataclass(frozen=True)
class DetectedFace:
    """One face in normalized image coordinates."""

    bbox: tuple[float, float, float, float]
    landmarks: tuple[tuple[float, float], ...]
    confidence: float


EMPTY_FACE = DetectedFace(
    bbox=(0.0, 0.0, 0.0, 0.0),
    landmarks=((0.0, 0.0),) * NUM_LANDMARKS,
    confidence=0.0,
)


# ---------------------------------------------------------------------------
# Anchors, decoding and NMS
# ---------------------------------------------------------------------------


def generate_anchors() -> NDArray[np.float32]:
    """BlazeFace front anchors as (cx, cy, w, h) rows.

    16x16 cells with 2 anchors each, then 8x8 cells with 6 each. Anchors in
    a cell share its center; the size factors are fixed at 1.
    """
    anchors: list[tuple[float, float, float, float]] = []
    for grid, per_cell in FEATURE_MAPS:
        for gy in range(grid):
            for gx in range(grid):
                cx = (gx + 0.5) / grid
                cy = (gy + 0.5) / grid
                anchors.extend([(cx, cy, 1.0, 1.0)] * per_cell)
    return np.asarray(anchors, dtype=np.float32)


def sigmoid(x: NDArray[np.float32]) -> NDArray[np.float32]:
    clipped = np.clip(np.asarray(x, dtype=np.float32), -80.0, 80.0)
    return 1.0 / (1.0 + np.exp(-clipped))


def split_outputs(
    outputs: Sequence[NDArray[np.float32]], num_anchors: int = NUM_ANCHORS
) -> tuple[NDArray[np.float32], NDArray[np.float32]] | None:
    """Turn any supported output set into (regressors[N, 16], raw_scores[N])."""
    flat = [np.asarray(o, dtype=np.float32).reshape(-1) for o in outputs]
    by_size = {arr.size: arr for arr in flat}

    if len(flat) >= 4:
        (g1, n1), (g2, n2) = FEATURE_MAPS
        fm1, fm2 = g1 * g1 * n1, g2 * g2 * n2
        sizes = (fm1, fm2, fm1 * REGRESSOR_VALUES, fm2 * REGRESSOR_VALUES)
        if all(size in by_size for size in sizes):
            scores = np.concatenate([by_size[fm1], by_size[fm2]])
            regressors = np.concatenate(
                [
                    by_size[sizes[2]].reshape(-1, REGRESSOR_VALUES),
                    by_size[sizes[3]].reshape(-1, REGRESSOR_VALUES),
                ]
            )
            return regressors, scores
        return None

    if len(flat) >= 2:
        regressor_size = num_anchors * REGRESSOR_VALUES
        if regressor_size in by_size and num_anchors in by_size:
            return by_size[regressor_size].reshape(num_anchors, REGRESSOR_VALUES), by_size[num_anchors]
        return None

    if len(flat) == 1 and flat[0].size >= num_anchors * (REGRESSOR_VALUES + 1):
        per_anchor = flat[0].size // num_anchors
        rows = flat[0][: num_anchors * per_anchor].reshape(num_anchors, per_anchor)
        return rows[:, :REGRESSOR_VALUES], rows[:, REGRESSOR_VALUES]

    return None


def decode_boxes(
    regressors: NDArray[np.float32],
    raw_scores: NDArray[np.float32],
    anchors: NDArray[np.float32],
    threshold: float,
    input_width: int = INPUT_SIZE,
    input_height: int = INPUT_SIZE,
) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
    """Decode anchors that pass ``threshold``.

    Returns (boxes[K, 4] as x, y, w, h; landmarks[K, 6, 2]; scores[K]),
    everything clipped to [0, 1] and ordered by descending score.
    """
    count = min(len(anchors), len(regressors), len(raw_scores))
    scores = sigmoid(raw_scores[:count])
    keep = np.flatnonzero(scores >= threshold)
    keep = keep[np.argsort(-scores[keep], kind="stable")]

    reg = regressors[keep]
    ax = anchors[keep, 0]
    ay = anchors[keep, 1]
    scale = np.array([input_width, input_height], dtype=np.float32)

    cx = reg[:, 0] / scale[0] + ax
    cy = reg[:, 1] / scale[1] + ay
    w = reg[:, 2] / scale[0]
    h = reg[:, 3] / scale[1]
    boxes = np.stack([cx - w / 2, cy - h / 2, w, h], axis=-1)

    offsets = reg[:, 4:REGRESSOR_VALUES].reshape(-1, NUM_LANDMARKS, 2) / scale
    landmarks = offsets + np.stack([ax, ay], axis=-1)[:, None, :]

    # Non-finite regressor values publish as 0 rather than NaN.
    return (
        np.clip(np.nan_to_num(boxes, nan=0.0), 0.0, 1.0).astype(np.float32),
        np.clip(np.nan_to_num(landmarks, nan=0.0), 0.0, 1.0).astype(np.float32),
        scores[keep].astype(np.float32),
    )


def iou(a: Sequence[float], b: Sequence[float]) -> float:
    """Intersection over union of two (x, y, w, h) boxes."""
    x1 = max(a[0], b[0])
    y1 = max(a[1], b[1])
    x2 = min(a[0] + a[2], b[0] + b[2])
    y2 = min(a[1] + a[3], b[1] + b[3])
    inter = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    union = a[2] * a[3] + b[2] * b[3] - inter
    return inter / union if union > 0 else 0.0


def non_max_suppression(boxes: NDArray[np.float32], iou_threshold: float, max_keep: int) -> list[int]:
    """Greedy NMS over boxes already sorted by descending confidence.

    Returns indices of the kept boxes, at most ``max_keep`` of them.
    """
    suppressed = np.zeros(len(boxes), dtype=bool)
    kept: list[int] = []
    for i in range(len(boxes)):
        if len(kept) >= max_keep:
            break
        if suppressed[i]:
            continue
        kept.append(i)
        for j in range(i + 1, len(boxes)):
            if not suppressed[j] and iou(boxes[i], boxes[j]) > iou_threshold:
                suppressed[j] = True
    return kept


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


class FaceDetector(InferenceAdapter):
    """BlazeFace face detection operator."""

    description = "Detect faces and facial landmarks using BlazeFace model"
    value_range = ValueRange.SIGNED

    def __init__(
        self,
        settings: Settings | None = None,
        model_manager: OnnxModelManager | None = None,
    ) -> None:
        super().__init__(settings, model_manager)
        self._confidence_threshold = self._settings.face_confidence_threshold
        self._max_faces = self._settings.max_faces
        self._iou_threshold = self._settings.nms_iou_threshold
        self._faces: list[DetectedFace] = []
        self._input_width = INPUT_SIZE
        self._input_height = INPUT_SIZE
        self._layout = Layout.NHWC
        self._anchors = generate_anchors()
        logger.info("[FaceDetector] Generated %d anchors", len(self._anchors))

    # -- Configuration ------------------------------------------------------

    def confidence_threshold(self, threshold: float) -> Self:
        if not np.isfinite(threshold):
            threshold = self._settings.face_confidence_threshold
        self._confidence_threshold = float(np.clip(threshold, 0.0, 1.0))
        return self

    def max_faces(self, count: int) -> Self:
        self._max_faces = max(1, int(count))
        return self

    @property
    def threshold(self) -> float:
        return self._confidence_threshold

    @property
    def face_limit(self) -> int:
        return self._max_faces

    @property
    def anchors(self) -> NDArray[np.float32]:
        return self._anchors

    @property
    def input_size(self) -> tuple[int, int]:
        """(width, height) fed to the model."""
        return self._input_width, self._input_height

    # -- Results ------------------------------------------------------------

    def detected(self) -> bool:
        return bool(self._faces)

    def face_count(self) -> int:
        return len(self._faces)

    def face(self, index: int) -> DetectedFace:
        if not 0 <= index < len(self._faces):
            return EMPTY_FACE
        return self._faces[index]

    def bounding_box(self, index: int = 0) -> tuple[float, float, float, float]:
        """(x, y, width, height) normalized to the source frame."""
        return self.face(index).bbox

    def landmark(self, face_index: int, landmark: int) -> tuple[float, float]:
        if not 0 <= landmark < NUM_LANDMARKS:
            return (0.0, 0.0)
        return self.face(face_index).landmarks[landmark]

    def confidence(self, index: int = 0) -> float:
        return self.face(index).confidence

    def faces(self) -> list[DetectedFace]:
        return list(self._faces)

    # -- Hooks --------------------------------------------------------------

    def on_model_loaded(self) -> None:
        geometry = tensor_geometry(self.input_shape(0))
        # Dynamic dims load as 1, which says nothing about layout either.
        if geometry is not None and geometry.height > 32 and geometry.width > 32:
            self._layout = geometry.layout
            self._input_width, self._input_height = geometry.width, geometry.height

        logger.info(
            "[FaceDetector] Model input size: %dx%d (%s)",
            self._input_width,
            self._input_height,
            self._layout,
        )
        for i in range(self.output_count()):
            logger.info("  Output %d: %s shape=%s", i, self.output_name(i), list(self.output_shape(i)))

    def prepare_input(self, ctx: Context, tensor: Tensor, frame: Frame) -> None:
        channels = 3
        if len(tensor.shape) >= 4:
            channels = tensor.shape[1] if self._layout is Layout.NCHW else tensor.shape[3]
        tensor.resize(image_shape(self._layout, self._input_height, self._input_width, channels))
        self._resampler.convert(frame, tensor)

    def decode_output(self, tensor: Tensor) -> None:
        outputs = [self.output_tensor(i).data for i in range(self.output_count())]
        self.decode(outputs)

    def decode(self, outputs: Sequence[NDArray[np.float32]]) -> None:
        """Decode raw model outputs and publish the surviving faces."""
        split = split_outputs(outputs, len(self._anchors))
        if split is None:
            logger.warning(
                "[FaceDetector] Unrecognized outputs (sizes=%s)",
                [int(np.asarray(o).size) for o in outputs],
            )
            self._faces = []
            return

        regressors, raw_scores = split
        boxes, landmarks, scores = decode_boxes(
            regressors,
            raw_scores,
            self._anchors,
            self._confidence_threshold,
            self._input_width,
            self._input_height,
        )

        limit = self._max_faces * 3
        boxes, landmarks, scores = boxes[:limit], landmarks[:limit], scores[:limit]
        self._faces = self.suppress(boxes, landmarks, scores)

    def suppress(
        self,
        boxes: NDArray[np.float32],
        landmarks: NDArray[np.float32],
        scores: NDArray[np.float32],
    ) -> list[DetectedFace]:
        """Apply NMS to confidence-sorted candidates and build the face list."""
        kept = non_max_suppression(boxes, self._iou_threshold, self._max_faces)
        return [
            DetectedFace(
                bbox=tuple(float(v) for v in boxes[i]),
                landmarks=tuple((float(x), float(y)) for x, y in landmarks[i]),
                confidence=float(scores[i]),
            )
            for i in kept
        ]
