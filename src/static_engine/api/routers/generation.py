"""Generation routes: batches, fix/regenerate, status projections and events."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from static_engine.api.schemas import (
    BatchStatusResponse,
    CancelBatchResponse,
    CreateGenerationRequest,
    CreateGenerationResponse,
    ErrorResponse,
    ExportResponse,
    FixErrorsRequest,
    GenerationListResponse,
    RecentGenerationResponse,
    SingleGenerationResponse,
    VariationResultsResponse,
    VariationStatusResponse,
)
from static_engine.container import ServiceContainer
from static_engine.models.generation import GenerationRequest
from static_engine.services.generation_service import GenerationService, GenerationServiceError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/generation",
    tags=["Generation"],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
ws_router = APIRouter(tags=["Generation Events"])


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_generation_service(request: Request) -> GenerationService:
    return get_container(request).generation_service


def get_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    """Authenticated user id, set by the upstream auth proxy."""
    return x_user_id


def _http_error(e: GenerationServiceError) -> HTTPException:
    status_code = 404 if e.is_not_found else 400
    return HTTPException(status_code=status_code, detail={"code": e.code.value, "message": e.message})


# =============================================================================
# Commands
# =============================================================================


@router.post("", response_model=CreateGenerationResponse, status_code=202)
async def create_generation(
    body: CreateGenerationRequest,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    """Create a batch of variations and queue them for generation."""
    request = GenerationRequest(
        brand_id=body.brand_id,
        product_id=body.product_id,
        concept_id=body.concept_id,
        important_notes=body.important_notes,
    )
    try:
        return await service.create_batch(request, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.post("/batch/{batch_id}/cancel", response_model=CancelBatchResponse)
async def cancel_batch(
    batch_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.cancel_batch(batch_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.post("/{variation_id}/fix", response_model=SingleGenerationResponse, status_code=202)
async def fix_errors(
    variation_id: str,
    body: FixErrorsRequest,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    """Queue a corrected copy of a completed variation."""
    try:
        return await service.fix_errors(variation_id, body.error_description, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.post("/{variation_id}/regenerate", response_model=SingleGenerationResponse, status_code=202)
async def regenerate_single(
    variation_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.regenerate_single(variation_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


# =============================================================================
# Queries
# =============================================================================


@router.get("", response_model=GenerationListResponse)
async def list_generations(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    brand_id: Optional[str] = None,
    product_id: Optional[str] = None,
    concept_id: Optional[str] = None,
    search: Optional[str] = None,
    oldest_first: bool = False,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    """Completed variations, newest first."""
    return await service.list_generations(
        user_id,
        page=page,
        limit=limit,
        brand_id=brand_id,
        product_id=product_id,
        concept_id=concept_id,
        search=search,
        oldest_first=oldest_first,
    )


@router.get("/recent", response_model=list[RecentGenerationResponse])
async def recent_generations(
    limit: int = Query(6, ge=1, le=50),
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> list[dict]:
    return await service.get_recent(user_id, limit=limit)


@router.get("/batch/{batch_id}", response_model=BatchStatusResponse)
async def batch_status(
    batch_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.get_batch_status(batch_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.get("/{variation_id}/status", response_model=VariationStatusResponse)
async def variation_status(
    variation_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.get_status(variation_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.get("/{variation_id}/results", response_model=VariationResultsResponse)
async def variation_results(
    variation_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.get_results(variation_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


@router.get("/{variation_id}/export", response_model=ExportResponse)
async def export_ratios(
    variation_id: str,
    service: GenerationService = Depends(get_generation_service),
    user_id: str = Depends(get_user_id),
) -> dict:
    try:
        return await service.export_ratios(variation_id, user_id)
    except GenerationServiceError as e:
        raise _http_error(e)


# =============================================================================
# Realtime events
# =============================================================================


@ws_router.websocket("/ws/generation/{user_id}")
async def generation_events(websocket: WebSocket, user_id: str) -> None:
    """Stream ``generation:*`` events for one user.

    Args:
        websocket: WebSocket connection
        user_id: User whose events are streamed
    """
    ws_manager = websocket.app.state.container.ws_manager
    await ws_manager.connect(user_id, websocket)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        ws_manager.disconnect(user_id, websocket)
