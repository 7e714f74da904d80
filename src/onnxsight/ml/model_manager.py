"""Model manager: resolve model references and build ONNX sessions.

A model reference is one of:

- ``hf://<owner>/<repo>/<filename>``: downloaded from HuggingFace into
  ``models_dir`` on first use;
- the name of a known model (see ``KNOWN_MODELS``), looked up in ``models_dir``;
- a plain filesystem path.

Sessions are not cached here: every detector owns its session exclusively.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from onnxsight.ml.exceptions import ConfigurationError

if TYPE_CHECKING:
    from onnxsight.config import Settings

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"


# ---------------------------------------------------------------------------
# Known models
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    POSE_ESTIMATION = "pose_estimation"
    FACE_DETECTION = "face_detection"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a supported model architecture."""

    name: str
    filename: str
    task: ModelTask
    input_size: int | None
    description: str


KNOWN_MODELS: dict[str, ModelSpec] = {
    "movenet_singlepose_lightning": ModelSpec(
        name="movenet_singlepose_lightning",
        filename="movenet/singlepose-lightning.onnx",
        task=ModelTask.POSE_ESTIMATION,
        input_size=192,
        description="MoveNet SinglePose Lightning, output [1,1,17,3]",
    ),
    "movenet_singlepose_thunder": ModelSpec(
        name="movenet_singlepose_thunder",
        filename="movenet/singlepose-thunder.onnx",
        task=ModelTask.POSE_ESTIMATION,
        input_size=256,
        description="MoveNet SinglePose Thunder, output [1,1,17,3]",
    ),
    "movenet_multipose_lightning": ModelSpec(
        name="movenet_multipose_lightning",
        filename="movenet/multipose-lightning.onnx",
        task=ModelTask.POSE_ESTIMATION,
        input_size=None,
        description="MoveNet MultiPose Lightning, output [1,6,56], dynamic input",
    ),
    "blazeface_front": ModelSpec(
        name="blazeface_front",
        filename="blazeface/face_detection_front_128x128_float32.onnx",
        task=ModelTask.FACE_DETECTION,
        input_size=128,
        description="BlazeFace front camera model, 896 anchors",
    ),
}


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

_OPTIMIZATION_LEVELS: dict[str, GraphOptimizationLevel] = {
    "disable": GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": GraphOptimizationLevel.ORT_ENABLE_ALL,
}


class OnnxModelManager:
    """Resolves model references to files and opens inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._downloads: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def resolve(self, reference: str) -> Path:
        """Turn a model reference into an existing local file.

        Raises:
            ConfigurationError: If the reference is empty or names no readable file.
        """
        reference = reference.strip()
        if not reference:
            raise ConfigurationError("No model path specified")

        if reference.startswith(HF_SCHEME):
            return self._download(reference)

        spec = KNOWN_MODELS.get(reference)
        path = self._models_dir / spec.filename if spec is not None else Path(reference).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Model file not found: {path}")
        return path

    def known_model_path(self, name: str) -> Path:
        """Return where a known model is expected inside ``models_dir``."""
        try:
            spec = KNOWN_MODELS[name]
        except KeyError:
            raise KeyError(f"Unknown model: {name}") from None
        return self._models_dir / spec.filename

    def create_session(self, reference: str) -> InferenceSession:
        """Resolve ``reference`` and open a new InferenceSession for it."""
        path = self.resolve(reference)
        session = InferenceSession(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        logger.info("Opened session for %s (providers=%s)", path, ",".join(self._provider_names()))
        return session

    # -- Internal -----------------------------------------------------------

    def _download(self, reference: str) -> Path:
        cached = self._downloads.get(reference)
        if cached is not None and cached.exists():
            return cached

        parts = reference[len(HF_SCHEME) :].split("/", 2)
        if len(parts) != 3 or not all(parts):
            raise ConfigurationError(f"Expected hf://<owner>/<repo>/<filename>, got {reference!r}")
        owner, repo, filename = parts

        downloaded = Path(
            hf_hub_download(
                repo_id=f"{owner}/{repo}",
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        self._downloads[reference] = downloaded
        logger.info("Downloaded %s to %s", reference, downloaded)
        return downloaded

    def _provider_names(self) -> list[str]:
        return [p if isinstance(p, str) else p[0] for p in self._providers]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0}),
                "CPUExecutionProvider",
            ]
        if device == "coreml":
            return ["CoreMLExecutionProvider", "CPUExecutionProvider"]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.graph_optimization_level = _OPTIMIZATION_LEVELS[self._settings.graph_optimization]

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
