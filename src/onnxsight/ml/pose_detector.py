"""MoveNet body tracking.

Detects 17 body keypoints with Google's MoveNet. Both output layouts are
understood:

- SinglePose (Lightning/Thunder): ``[1, 1, 17, 3]``, one ``(y, x, score)``
  triplet per keypoint.
- MultiPose: ``[1, N, 56]``, 17 triplets followed by a 5-value box per
  detection; the box is ignored and the strongest detection is published.

Usage:

    pose = PoseDetector().input(webcam).model("movenet_singlepose_lightning")
    pose.initialize(ctx)
    pose.process(ctx)
    if pose.detected():
        x, y = pose.keypoint(Keypoint.NOSE)
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple, Self

import numpy as np

from onnxsight.ml.inference import InferenceAdapter
from onnxsight.ml.resample import Layout, image_shape

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from onnxsight.config import Settings
    from onnxsight.host import Context
    from onnxsight.ml.model_manager import OnnxModelManager
    from onnxsight.ml.pixels import Frame
    from onnxsight.ml.tensor import Tensor

logger = logging.getLogger(__name__)

NUM_KEYPOINTS: int = 17
SINGLE_POSE_VALUES: int = NUM_KEYPOINTS * 3
MULTI_POSE_STRIDE: int = 56
MIN_VISIBLE_KEYPOINTS: int = 5
DEFAULT_INPUT_SIZE: int = 192
DYNAMIC_INPUT_SIZE: int = 256


class Keypoint(IntEnum):
    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


class BoneConnection(NamedTuple):
    start: Keypoint
    end: Keypoint


SKELETON_CONNECTIONS: tuple[BoneConnection, ...] = (
    # Face
    BoneConnection(Keypoint.LEFT_EAR, Keypoint.LEFT_EYE),
    BoneConnection(Keypoint.LEFT_EYE, Keypoint.NOSE),
    BoneConnection(Keypoint.NOSE, Keypoint.RIGHT_EYE),
    BoneConnection(Keypoint.RIGHT_EYE, Keypoint.RIGHT_EAR),
    # Torso
    BoneConnection(Keypoint.LEFT_SHOULDER, Keypoint.RIGHT_SHOULDER),
    BoneConnection(Keypoint.LEFT_SHOULDER, Keypoint.LEFT_HIP),
    BoneConnection(Keypoint.RIGHT_SHOULDER, Keypoint.RIGHT_HIP),
    BoneConnection(Keypoint.LEFT_HIP, Keypoint.RIGHT_HIP),
    # Left arm
    BoneConnection(Keypoint.LEFT_SHOULDER, Keypoint.LEFT_ELBOW),
    BoneConnection(Keypoint.LEFT_ELBOW, Keypoint.LEFT_WRIST),
    # Right arm
    BoneConnection(Keypoint.RIGHT_SHOULDER, Keypoint.RIGHT_ELBOW),
    BoneConnection(Keypoint.RIGHT_ELBOW, Keypoint.RIGHT_WRIST),
    # Left leg
    BoneConnection(Keypoint.LEFT_HIP, Keypoint.LEFT_KNEE),
    BoneConnection(Keypoint.LEFT_KNEE, Keypoint.LEFT_ANKLE),
    # Right leg
    BoneConnection(Keypoint.RIGHT_HIP, Keypoint.RIGHT_KNEE),
    BoneConnection(Keypoint.RIGHT_KNEE, Keypoint.RIGHT_ANKLE),
)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _to_xyc(triplets: NDArray[np.float32]) -> NDArray[np.float32]:
    """Reorder (y, x, score) rows to (x, y, score), clipped to [0, 1]."""
    xyc = triplets[:, [1, 0, 2]].astype(np.float32)
    return np.clip(np.nan_to_num(xyc, nan=0.0), 0.0, 1.0)


def is_multi_pose(tensor: Tensor) -> bool:
    size = tensor.size()
    if len(tensor.shape) == 3 and tensor.shape[-1] == MULTI_POSE_STRIDE:
        return True
    return size != SINGLE_POSE_VALUES and size > 0 and size % MULTI_POSE_STRIDE == 0


def decode_single_pose(values: NDArray[np.float32]) -> NDArray[np.float32] | None:
    """Return (17, 3) x/y/score rows, or None if there are too few values."""
    if values.size < SINGLE_POSE_VALUES:
        return None
    return _to_xyc(values[:SINGLE_POSE_VALUES].reshape(NUM_KEYPOINTS, 3))


def select_best_pose(values: NDArray[np.float32], threshold: float) -> NDArray[np.float32] | None:
    """Pick the multi-pose detection with the most confident keypoints.

    Detections are ranked by (keypoints at or above ``threshold``, mean score);
    the earliest detection wins a tie.
    """
    count = values.size // MULTI_POSE_STRIDE
    if count == 0:
        return None

    detections = values[: count * MULTI_POSE_STRIDE].reshape(count, MULTI_POSE_STRIDE)
    keypoints = detections[:, :SINGLE_POSE_VALUES].reshape(count, NUM_KEYPOINTS, 3)
    scores = keypoints[:, :, 2]

    best = 0
    best_key = (-1, -np.inf)
    for d in range(count):
        key = (int(np.count_nonzero(scores[d] >= threshold)), float(scores[d].mean()))
        if key > best_key:
            best, best_key = d, key
    return _to_xyc(keypoints[best])


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


class PoseDetector(InferenceAdapter):
    """MoveNet pose estimation operator."""

    description = "Detect body poses using MoveNet model"

    def __init__(
        self,
        settings: Settings | None = None,
        model_manager: OnnxModelManager | None = None,
    ) -> None:
        super().__init__(settings, model_manager)
        self._confidence_threshold = self._settings.pose_confidence_threshold
        self._draw_skeleton = True
        self._detected = False
        self._keypoints: NDArray[np.float32] = np.zeros((NUM_KEYPOINTS, 3), dtype=np.float32)
        self._input_width = DEFAULT_INPUT_SIZE
        self._input_height = DEFAULT_INPUT_SIZE

    # -- Configuration ------------------------------------------------------

    def confidence_threshold(self, threshold: float) -> Self:
        if not np.isfinite(threshold):
            threshold = self._settings.pose_confidence_threshold
        self._confidence_threshold = float(np.clip(threshold, 0.0, 1.0))
        return self

    def draw_skeleton(self, draw: bool) -> Self:
        self._draw_skeleton = bool(draw)
        return self

    @property
    def threshold(self) -> float:
        return self._confidence_threshold

    @property
    def draws_skeleton(self) -> bool:
        return self._draw_skeleton

    @property
    def input_size(self) -> tuple[int, int]:
        """(width, height) fed to the model."""
        return self._input_width, self._input_height

    # -- Results ------------------------------------------------------------

    def detected(self) -> bool:
        return self._detected

    def keypoint(self, index: int) -> tuple[float, float]:
        """Normalized (x, y) of a keypoint; (0, 0) for an invalid index."""
        if not 0 <= index < NUM_KEYPOINTS:
            return (0.0, 0.0)
        x, y, _ = self._keypoints[index]
        return (float(x), float(y))

    def confidence(self, index: int) -> float:
        if not 0 <= index < NUM_KEYPOINTS:
            return 0.0
        return float(self._keypoints[index, 2])

    def keypoints(self) -> NDArray[np.float32]:
        """All 17 keypoints as an (17, 3) array of x, y, confidence."""
        return self._keypoints.copy()

    def visible_bones(self) -> list[BoneConnection]:
        """Skeleton connections whose two endpoints pass the threshold."""
        if not self._detected:
            return []
        scores = self._keypoints[:, 2]
        return [
            bone
            for bone in SKELETON_CONNECTIONS
            if scores[bone.start] >= self._confidence_threshold and scores[bone.end] >= self._confidence_threshold
        ]

    # -- Hooks --------------------------------------------------------------

    def on_model_loaded(self) -> None:
        # SinglePose models are fixed at 192 (Lightning) or 256 (Thunder);
        # MultiPose has dynamic dims, which load as 1.
        shape = self.input_shape(0)
        if len(shape) < 4:
            return
        height, width = shape[1], shape[2]
        if height < 32 or width < 32:
            self._input_width = self._input_height = DYNAMIC_INPUT_SIZE
            logger.info("[PoseDetector] Dynamic input size, using %dx%d", self._input_width, self._input_height)
        else:
            self._input_width, self._input_height = width, height
            logger.info("[PoseDetector] Model input size: %dx%d", self._input_width, self._input_height)

    def prepare_input(self, ctx: Context, tensor: Tensor, frame: Frame) -> None:
        channels = tensor.shape[3] if len(tensor.shape) >= 4 else 3
        tensor.resize(image_shape(Layout.NHWC, self._input_height, self._input_width, channels))
        self._resampler.convert(frame, tensor)

    def decode_output(self, tensor: Tensor) -> None:
        values = tensor.data
        if is_multi_pose(tensor):
            keypoints = select_best_pose(values, self._confidence_threshold)
        else:
            keypoints = decode_single_pose(values)

        if keypoints is None:
            logger.warning("[PoseDetector] Unrecognized output shape %s", list(tensor.shape))
            keypoints = np.zeros((NUM_KEYPOINTS, 3), dtype=np.float32)

        visible = int(np.count_nonzero(keypoints[:, 2] >= self._confidence_threshold))
        self._keypoints = keypoints
        self._detected = visible >= MIN_VISIBLE_KEYPOINTS
