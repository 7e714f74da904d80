"""Operator registry.

An explicit table of the operators this package provides, so host tooling
can enumerate them (name, category, description) and build them by name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from onnxsight.ml.face_detector import FaceDetector
from onnxsight.ml.inference import InferenceAdapter
from onnxsight.ml.pose_detector import PoseDetector

if TYPE_CHECKING:
    from onnxsight.config import Settings

ADDON_NAME = "onnxsight"
CATEGORY_ML = "ML"


@dataclass(frozen=True)
class OperatorInfo:
    """Static metadata for one registered operator."""

    name: str
    category: str
    description: str
    output_kind: str
    addon: str
    factory: type[InferenceAdapter]


def _entry(cls: type[InferenceAdapter]) -> OperatorInfo:
    return OperatorInfo(
        name=cls.__name__,
        category=CATEGORY_ML,
        description=cls.description,
        output_kind="tensor" if cls is InferenceAdapter else "detections",
        addon=ADDON_NAME,
        factory=cls,
    )


OPERATOR_REGISTRY: dict[str, OperatorInfo] = {
    info.name: info for info in (_entry(InferenceAdapter), _entry(PoseDetector), _entry(FaceDetector))
}


def list_operators(category: str | None = None) -> list[OperatorInfo]:
    """Registered operators, optionally restricted to one category."""
    return [info for info in OPERATOR_REGISTRY.values() if category is None or info.category == category]


def get_operator(name: str) -> OperatorInfo:
    try:
        return OPERATOR_REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown operator: {name}") from None


def create_operator(name: str, settings: Settings | None = None) -> InferenceAdapter:
    """Instantiate a registered operator by name."""
    return get_operator(name).factory(settings)
