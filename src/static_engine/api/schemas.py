"""Pydantic request/response models for the static-engine API."""

from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    queue: dict[str, int] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [{"status": "healthy", "version": "1.0.0", "queue": {"waiting": 2}}]
        }
    }


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error body returned for service errors."""

    detail: ErrorDetail


class CreateGenerationResponse(BaseModel):
    """Response of a new generation batch."""

    batch_id: str
    variation_ids: list[str]
    status: str
    message: str

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "batch_id": "9c4d2a54-3b0e-4f5c-8f6a-1b2c3d4e5f60",
                    "variation_ids": ["a1", "a2", "a3", "a4", "a5", "a6"],
                    "status": "pending",
                    "message": "Generation started successfully!",
                }
            ]
        }
    }


class SingleGenerationResponse(BaseModel):
    """Response of fix-errors and regenerate-single."""

    variation_id: str
    batch_id: str
    status: str
    message: str


class CancelBatchResponse(BaseModel):
    batch_id: str
    cancelled_count: int


class VariationStatusResponse(BaseModel):
    """Status projection of one variation."""

    id: str = Field(alias="_id")
    batch_id: str
    variation_index: int
    generation_status: str
    image_url_1x1: str | None = None
    image_url_9x16: str | None = None
    image_url_16x9: str | None = None
    ad_copy_json: dict[str, Any] | None = None
    ad_name: str | None = None
    created_at: str | None = None

    model_config = {"populate_by_name": True}


class VariationResultsResponse(VariationStatusResponse):
    """Full projection of a completed variation."""

    important_notes: str = ""
    is_saved: bool = False
    is_favorite: bool = False
    brand_snapshot: dict[str, Any] | None = None
    product_snapshot: dict[str, Any] | None = None


class BatchStatusResponse(BaseModel):
    """Aggregate status of a batch."""

    batch_id: str
    status: str
    total: int
    counts: dict[str, int]
    variations: list[VariationStatusResponse]


class RatioExport(BaseModel):
    ratio: str
    label: str
    image_url: str | None = None


class ExportResponse(BaseModel):
    """Per-ratio download links."""

    id: str = Field(alias="_id")
    ad_name: str | None = None
    ratios: list[RatioExport]

    model_config = {"populate_by_name": True}


class RecentGenerationResponse(BaseModel):
    id: str = Field(alias="_id")
    ad_name: str | None = None
    image_url: str | None = None
    created_at: str | None = None
    brand_name: str
    concept_name: str

    model_config = {"populate_by_name": True}


class GenerationListResponse(BaseModel):
    """Paginated list of completed variations."""

    items: list[VariationStatusResponse] = Field(alias="list")
    total: int
    page: int
    limit: int

    model_config = {"populate_by_name": True}


# =============================================================================
# Request Models
# =============================================================================


class CreateGenerationRequest(BaseModel):
    """Request body for a new generation batch."""

    brand_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    concept_id: str = Field(min_length=1)
    important_notes: str = Field(default="", max_length=2000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "brand_id": "brand_123",
                    "product_id": "product_456",
                    "concept_id": "concept_789",
                    "important_notes": "Mention the summer sale",
                }
            ]
        }
    }


class FixErrorsRequest(BaseModel):
    """Request body for fix-errors."""

    error_description: str = Field(default="", max_length=2000)
