"""Tests for BlazeFace anchors, decoding and NMS."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeModelManager, FakeSession, node
from onnxsight.config import Settings
from onnxsight.host import Context, StillImage
from onnxsight.ml.face_detector import (
    EMPTY_FACE,
    NUM_ANCHORS,
    FaceDetector,
    FaceLandmark,
    generate_anchors,
    iou,
    non_max_suppression,
    sigmoid,
    split_outputs,
)
from onnxsight.ml.resample import Layout

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

BOX_A = (0.1, 0.1, 0.3, 0.3)
BOX_B = (0.12, 0.12, 0.3, 0.3)
BOX_C = (0.6, 0.6, 0.2, 0.2)


def _raw(candidates: dict[int, tuple[float, list[float]]]) -> tuple[np.ndarray, np.ndarray]:
    """Regressors [1, 896, 16] and score logits [1, 896, 1]; unlisted anchors score -10."""
    regressors = np.zeros((NUM_ANCHORS, 16), dtype=np.float32)
    scores = np.full(NUM_ANCHORS, -10.0, dtype=np.float32)
    for index, (logit, reg) in candidates.items():
        scores[index] = logit
        regressors[index, : len(reg)] = reg
    return regressors[None], scores.reshape(1, NUM_ANCHORS, 1)


def _candidates(boxes: list[tuple[float, ...]]) -> tuple[np.ndarray, np.ndarray]:
    arr = np.asarray(boxes, dtype=np.float32)
    return arr, np.zeros((len(arr), 6, 2), dtype=np.float32)


@pytest.fixture()
def face(settings: Settings) -> FaceDetector:
    return FaceDetector(settings)


# ---------------------------------------------------------------------------
# Anchors and math
# ---------------------------------------------------------------------------


class TestAnchors:
    def test_count(self) -> None:
        anchors = generate_anchors()
        assert anchors.shape == (896, 4)
        assert NUM_ANCHORS == 896

    def test_first_feature_map(self) -> None:
        anchors = generate_anchors()
        assert anchors[0, :2].tolist() == pytest.approx([0.03125, 0.03125])
        assert anchors[1, :2].tolist() == pytest.approx([0.03125, 0.03125])
        assert anchors[2, :2].tolist() == pytest.approx([0.09375, 0.03125])
        assert anchors[511, :2].tolist() == pytest.approx([15.5 / 16, 15.5 / 16])

    def test_second_feature_map(self) -> None:
        anchors = generate_anchors()
        assert anchors[512, :2].tolist() == pytest.approx([0.0625, 0.0625])
        assert anchors[517, :2].tolist() == pytest.approx([0.0625, 0.0625])
        assert anchors[518, :2].tolist() == pytest.approx([0.1875, 0.0625])
        assert anchors[895, :2].tolist() == pytest.approx([0.9375, 0.9375])

    def test_unit_sizes(self) -> None:
        assert (generate_anchors()[:, 2:] == 1.0).all()

    def test_sigmoid(self) -> None:
        assert sigmoid(np.array([0.0]))[0] == 0.5
        assert sigmoid(np.array([-1000.0]))[0] == pytest.approx(0.0, abs=1e-30)
        assert sigmoid(np.array([1000.0]))[0] == pytest.approx(1.0)

    def test_iou(self) -> None:
        assert iou(BOX_A, BOX_B) == pytest.approx(0.0784 / 0.1016, rel=1e-4)
        assert iou(BOX_A, BOX_C) == 0.0
        assert iou(BOX_A, BOX_A) == pytest.approx(1.0)

    def test_iou_degenerate(self) -> None:
        assert iou((0.1, 0.1, 0.0, 0.0), (0.1, 0.1, 0.0, 0.0)) == 0.0


class TestNonMaxSuppression:
    def test_overlap_suppressed(self) -> None:
        boxes, _ = _candidates([BOX_A, BOX_B])
        assert non_max_suppression(boxes, 0.3, 10) == [0]

    def test_disjoint_kept(self) -> None:
        boxes, _ = _candidates([BOX_A, BOX_B, BOX_C])
        assert non_max_suppression(boxes, 0.3, 10) == [0, 2]

    def test_max_keep(self) -> None:
        boxes, _ = _candidates([BOX_A, BOX_C, (0.8, 0.1, 0.1, 0.1)])
        assert non_max_suppression(boxes, 0.3, 2) == [0, 1]

    def test_small_shifted_boxes(self) -> None:
        a, b, c = (0.1, 0.1, 0.2, 0.2), (0.12, 0.12, 0.2, 0.2), (0.6, 0.6, 0.2, 0.2)
        assert iou(a, b) == pytest.approx(0.0324 / 0.0476, rel=1e-4)
        boxes, _ = _candidates([a, b])
        assert non_max_suppression(boxes, 0.3, 10) == [0]
        boxes, _ = _candidates([a, b, c])
        assert non_max_suppression(boxes, 0.3, 10) == [0, 2]

    def test_suppressed_box_does_not_suppress(self) -> None:
        boxes, _ = _candidates([(0.0, 0.0, 0.4, 0.4), (0.1, 0.1, 0.4, 0.4), (0.2, 0.2, 0.4, 0.4)])
        # Box 2 overlaps box 1 heavily but box 0 only mildly.
        assert iou(boxes[0], boxes[2]) < 0.3
        assert non_max_suppression(boxes, 0.3, 10) == [0, 2]


# ---------------------------------------------------------------------------
# Output layouts
# ---------------------------------------------------------------------------


class TestSplitOutputs:
    def test_two_tensors_any_order(self) -> None:
        regressors, scores = _raw({600: (5.0, [0, 0, 32, 32])})
        first = split_outputs([regressors, scores])
        second = split_outputs([scores, regressors])
        assert first is not None and second is not None
        np.testing.assert_array_equal(first[0], second[0])
        assert first[1][600] == 5.0

    def test_four_tensors(self) -> None:
        regressors, scores = _raw({600: (5.0, [0, 0, 32, 32]), 3: (4.0, [1, 2])})
        reg, sc = regressors[0], scores[0, :, 0]
        outputs = [sc[512:, None][None], reg[:512][None], sc[:512, None][None], reg[512:][None]]
        split = split_outputs(outputs)
        assert split is not None
        np.testing.assert_array_equal(split[0], reg)
        np.testing.assert_array_equal(split[1], sc)

    def test_single_tensor(self) -> None:
        regressors, scores = _raw({7: (3.0, [1, 2, 3, 4])})
        packed = np.concatenate([regressors, scores], axis=-1)
        split = split_outputs([packed])
        assert split is not None
        assert split[0][7, :4].tolist() == [1, 2, 3, 4]
        assert split[1][7] == 3.0

    def test_unrecognized(self) -> None:
        assert split_outputs([np.zeros(10), np.zeros(20)]) is None
        assert split_outputs([np.zeros(100)]) is None
        assert split_outputs([]) is None


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


class TestFaceDetector:
    def test_defaults(self, face: FaceDetector) -> None:
        assert not face.detected()
        assert face.face_count() == 0
        assert face.threshold == pytest.approx(0.5)
        assert face.face_limit == 10
        assert face.input_size == (128, 128)
        assert len(face.anchors) == 896

    def test_fluent_configuration(self, face: FaceDetector) -> None:
        assert face.confidence_threshold(0.7).max_faces(3) is face
        assert face.threshold == pytest.approx(0.7)
        assert face.face_limit == 3

    def test_configuration_clamped(self, face: FaceDetector) -> None:
        assert face.max_faces(0).face_limit == 1
        assert face.confidence_threshold(2.0).threshold == 1.0

    def test_non_finite_threshold_uses_default(self, face: FaceDetector) -> None:
        assert face.confidence_threshold(0.7).confidence_threshold(float("nan")).threshold == 0.5
        assert face.confidence_threshold(float("inf")).threshold == 0.5

    def test_decode_single_face(self, face: FaceDetector) -> None:
        face.decode(list(_raw({600: (5.0, [0, 0, 32, 32])})))
        assert face.face_count() == 1
        assert face.bounding_box() == pytest.approx((0.6875, 0.0625, 0.25, 0.25))
        assert face.confidence() == pytest.approx(float(sigmoid(np.array([5.0]))[0]))
        assert face.landmark(0, FaceLandmark.NOSE) == pytest.approx((0.8125, 0.1875))

    def test_landmark_offsets(self, face: FaceDetector) -> None:
        reg = [0, 0, 16, 16, 12.8, -12.8]
        face.decode(list(_raw({600: (5.0, reg)})))
        assert face.landmark(0, FaceLandmark.RIGHT_EYE) == pytest.approx((0.9125, 0.0875))

    def test_box_clamped_to_frame(self, face: FaceDetector) -> None:
        face.decode(list(_raw({0: (5.0, [0, 0, 32, 32])})))
        x, y, w, h = face.bounding_box()
        assert x == 0.0 and y == 0.0
        assert w == pytest.approx(0.25)

    def test_threshold_is_inclusive(self, face: FaceDetector) -> None:
        face.decode(list(_raw({600: (0.0, [0, 0, 32, 32])})))
        assert face.face_count() == 1
        face.confidence_threshold(0.6)
        face.decode(list(_raw({600: (0.0, [0, 0, 32, 32])})))
        assert face.face_count() == 0

    def test_overlapping_candidates_merged(self, face: FaceDetector) -> None:
        # The two anchors of a cell share its center.
        face.decode(list(_raw({600: (5.0, [0, 0, 32, 32]), 601: (4.0, [1, 1, 32, 32])})))
        assert face.face_count() == 1
        assert face.confidence() == pytest.approx(float(sigmoid(np.array([5.0]))[0]))

    def test_faces_sorted_and_capped(self, face: FaceDetector) -> None:
        candidates = {2 * i: (1.0 + i * 0.1, [0, 0, 4, 4]) for i in range(10)}
        face.max_faces(3).decode(list(_raw(candidates)))
        assert face.face_count() == 3
        confidences = [f.confidence for f in face.faces()]
        assert confidences == sorted(confidences, reverse=True)
        assert confidences[0] == pytest.approx(float(sigmoid(np.array([1.9]))[0]))

    def test_four_tensor_decode_matches_two_tensor(self, face: FaceDetector) -> None:
        regressors, scores = _raw({600: (5.0, [0, 0, 32, 32])})
        reg, sc = regressors[0], scores[0, :, 0]
        face.decode([sc[:512], sc[512:], reg[:512], reg[512:]])
        assert face.bounding_box() == pytest.approx((0.6875, 0.0625, 0.25, 0.25))

    def test_unrecognized_outputs_clear_faces(self, face: FaceDetector) -> None:
        face.decode(list(_raw({600: (5.0, [0, 0, 32, 32])})))
        face.decode([np.zeros(10, dtype=np.float32)])
        assert not face.detected()

    def test_non_finite_regressors_stay_in_frame(self, face: FaceDetector) -> None:
        reg = [np.nan, 0, 32, np.inf, np.nan, -np.inf]
        face.decode(list(_raw({600: (5.0, reg)})))
        assert face.face_count() == 1
        detected = face.face(0)
        values = np.array([*detected.bbox, *np.ravel(detected.landmarks)])
        assert np.isfinite(values).all()
        assert ((values >= 0.0) & (values <= 1.0)).all()
        assert detected.bbox[0] == 0.0

    def test_suppress_small_shifted_boxes(self, face: FaceDetector) -> None:
        boxes, landmarks = _candidates([(0.1, 0.1, 0.2, 0.2), (0.12, 0.12, 0.2, 0.2), BOX_C])
        faces = face.suppress(boxes, landmarks, np.array([0.9, 0.8, 0.7], dtype=np.float32))
        assert [f.bbox for f in faces] == [pytest.approx((0.1, 0.1, 0.2, 0.2)), pytest.approx(BOX_C)]

    def test_suppress(self, face: FaceDetector) -> None:
        boxes, landmarks = _candidates([BOX_A, BOX_B, BOX_C])
        faces = face.suppress(boxes, landmarks, np.array([0.9, 0.8, 0.7], dtype=np.float32))
        assert [f.bbox for f in faces] == [pytest.approx(BOX_A), pytest.approx(BOX_C)]
        assert faces[0].confidence == pytest.approx(0.9)

    def test_out_of_range_accessors(self, face: FaceDetector) -> None:
        face.decode(list(_raw({600: (5.0, [0, 0, 32, 32])})))
        assert face.face(5) is EMPTY_FACE
        assert face.bounding_box(-1) == (0.0, 0.0, 0.0, 0.0)
        assert face.landmark(0, 9) == (0.0, 0.0)
        assert face.landmark(3, 0) == (0.0, 0.0)
        assert face.confidence(3) == 0.0


class TestFaceDetectorPipeline:
    def _detector(
        self, settings: Settings, input_shape: list[int], type_str: str = "tensor(float)"
    ) -> tuple[FaceDetector, FakeSession]:
        session = FakeSession(
            [node("input", input_shape, type_str)],
            [node("regressors", [1, 896, 16]), node("classificators", [1, 896, 1])],
            list(_raw({600: (5.0, [0, 0, 32, 32])})),
        )
        gray = StillImage(np.full((48, 64, 4), 128, dtype=np.uint8))
        detector = FaceDetector(settings, FakeModelManager(session)).input(gray).model("blazeface_front")
        return detector, session

    def test_nhwc_signed_input(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, 128, 128, 3])
        detector.initialize(ctx)
        detector.process(ctx)
        feed = session.feeds[0]["input"]
        assert feed.shape == (1, 128, 128, 3)
        assert feed[0, 0, 0, 0] == pytest.approx(0.00392, abs=1e-5)
        assert detector.face_count() == 1
        assert detector.bounding_box(0) == pytest.approx((0.6875, 0.0625, 0.25, 0.25))

    def test_nchw_input(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, 3, 128, 128])
        detector.initialize(ctx)
        detector.process(ctx)
        assert session.feeds[0]["input"].shape == (1, 3, 128, 128)
        assert detector._layout is Layout.NCHW

    def test_uint8_input(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, 128, 128, 3], "tensor(uint8)")
        detector.initialize(ctx)
        detector.process(ctx)
        assert (session.feeds[0]["input"] == 128).all()

    def test_small_declared_input_keeps_default(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, -1, -1, 3])
        detector.initialize(ctx)
        detector.process(ctx)
        assert detector.input_size == (128, 128)
        assert session.feeds[0]["input"].shape == (1, 128, 128, 3)

    def test_larger_model_input(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, 256, 256, 3])
        detector.initialize(ctx)
        detector.process(ctx)
        assert detector.input_size == (256, 256)
        # Offsets are divided by the model input size.
        assert detector.bounding_box(0)[2] == pytest.approx(0.125)

    def test_failed_inference_keeps_faces(self, settings: Settings, ctx: Context) -> None:
        detector, session = self._detector(settings, [1, 128, 128, 3])
        detector.initialize(ctx)
        detector.process(ctx)
        session.error = RuntimeError("kernel failed")
        detector.process(ctx)
        assert detector.face_count() == 1
