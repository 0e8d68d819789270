# Data models for static-engine
from .catalog import Brand, Concept, Product
from .generation import (
    ALL_RATIOS,
    AdCopy,
    AspectRatio,
    CopyUsage,
    CreateTaskData,
    FixTaskData,
    GenerationRequest,
    GenerationStatus,
    GenerationVariation,
    TaskType,
    new_variation_record,
)

__all__ = [
    # Catalog
    "Brand",
    "Product",
    "Concept",
    # Generation
    "ALL_RATIOS",
    "AdCopy",
    "AspectRatio",
    "CopyUsage",
    "GenerationRequest",
    "GenerationStatus",
    "GenerationVariation",
    "new_variation_record",
    # Queue payloads
    "TaskType",
    "CreateTaskData",
    "FixTaskData",
]
