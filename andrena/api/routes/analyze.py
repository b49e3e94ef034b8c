"""Analysis endpoint implementation."""
from __future__ import annotations

import logging
from http import HTTPStatus

from fastapi import APIRouter, HTTPException, Request

from andrena.core.errors import PipelineError
from andrena.models.engine import InferenceResult
from andrena.pipeline import PipelineCoordinator
from andrena.schemas import AnalysisRequest, AnalysisResponse

router = APIRouter(prefix="/analyze", tags=["analysis"])
logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "NotFound": HTTPStatus.NOT_FOUND,
    "UnsupportedFormat": HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
    "UnsupportedCodec": HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
    "CorruptStream": HTTPStatus.UNPROCESSABLE_ENTITY,
    "EmptyMedia": HTTPStatus.UNPROCESSABLE_ENTITY,
    "NetworkFailure": HTTPStatus.BAD_GATEWAY,
    "Timeout": HTTPStatus.GATEWAY_TIMEOUT,
    "PipelineTimeout": HTTPStatus.GATEWAY_TIMEOUT,
}


def _pipeline_failure(exc: PipelineError) -> HTTPException:
    kind = exc.kind_name
    return HTTPException(
        status_code=STATUS_BY_KIND.get(kind, HTTPStatus.INTERNAL_SERVER_ERROR),
        detail={
            "error": {
                "type": kind,
                "stage": exc.stage.value if exc.stage else None,
                "detail": exc.message,
            }
        },
    )


@router.post("", response_model=AnalysisResponse)
async def analyze_media(payload: AnalysisRequest, request: Request) -> AnalysisResponse:
    coordinator: PipelineCoordinator = request.app.state.coordinator

    try:
        result: InferenceResult = await coordinator.process(payload.to_media_request())
    except PipelineError as exc:
        logger.info("Analysis of '%s' failed: %s", payload.url, exc.message)
        raise _pipeline_failure(exc) from exc

    return AnalysisResponse.from_result(result)
