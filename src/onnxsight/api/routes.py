"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from onnxsight.api.middleware import verify_api_key
from onnxsight.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelSchemaResponse,
    ModelsResponse,
    OperatorResponse,
    OperatorsResponse,
    TensorSchema,
)
from onnxsight.host import Context
from onnxsight.ml.inference import InferenceAdapter
from onnxsight.ml.model_manager import KNOWN_MODELS, OnnxModelManager
from onnxsight.ml.registry import list_operators

if TYPE_CHECKING:
    from onnxsight.config import Settings
    from onnxsight.ml.tensor import TensorInfo

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _tensor_schema(info: TensorInfo) -> TensorSchema:
    return TensorSchema(name=info.name, shape=list(info.shape), element_type=info.element_type.value)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    return HealthResponse(status="ok", device=settings.device, operators=len(list_operators()))


@router.get(
    "/operators",
    response_model=OperatorsResponse,
    summary="List registered operators",
)
async def operators(category: str | None = None) -> OperatorsResponse:
    """Return the operators this package registers with the host."""
    return OperatorsResponse(
        operators=[
            OperatorResponse(
                name=info.name,
                category=info.category,
                description=info.description,
                output_kind=info.output_kind,
            )
            for info in list_operators(category)
        ]
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List known models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return known models and whether each is present in the models directory."""
    manager = _get_model_manager(request)
    models: list[ModelInfo] = []
    for name, spec in KNOWN_MODELS.items():
        models.append(
            ModelInfo(
                name=name,
                task=spec.task,
                filename=spec.filename,
                input_size=spec.input_size,
                description=spec.description,
                status="present" if manager.known_model_path(name).is_file() else "missing",
            )
        )
    return ModelsResponse(models=models)


@router.get(
    "/models/{name}/schema",
    response_model=ModelSchemaResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
    summary="Inspect a known model's inputs and outputs",
)
async def model_schema(name: str, request: Request) -> ModelSchemaResponse:
    """Load a known model and report its resolved input/output schema."""
    if name not in KNOWN_MODELS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model: {name}")

    manager = _get_model_manager(request)
    if not manager.known_model_path(name).is_file():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Model file missing: {name}")

    adapter = InferenceAdapter(_get_settings(request), manager).model(name)
    await run_in_threadpool(adapter.initialize, Context())
    try:
        if not adapter.is_loaded():
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Model could not be loaded: {name}",
            )
        schema = adapter.schema()
        return ModelSchemaResponse(
            name=name,
            inputs=[_tensor_schema(info) for info in schema.inputs],
            outputs=[_tensor_schema(info) for info in schema.outputs],
        )
    finally:
        adapter.cleanup()
