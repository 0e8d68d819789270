"""Models for ad generation (variations, copy, ratios, queue payloads)."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class GenerationStatus(str, Enum):
    """Status of a single generated ad variation."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            GenerationStatus.COMPLETED,
            GenerationStatus.FAILED,
            GenerationStatus.CANCELLED,
        )


class AspectRatio(str, Enum):
    """Output aspect ratios generated for every variation."""

    SQUARE = "1:1"
    VERTICAL = "9:16"
    HORIZONTAL = "16:9"

    @property
    def key(self) -> str:
        """Storage/column key, e.g. ``1x1``."""
        return self.value.replace(":", "x")

    @property
    def url_field(self) -> str:
        return f"image_url_{self.key}"

    @property
    def label(self) -> str:
        return RATIO_LABELS[self]

    @property
    def orientation(self) -> str:
        return RATIO_ORIENTATIONS[self]


RATIO_LABELS = {
    AspectRatio.SQUARE: "Feed (1080x1080)",
    AspectRatio.VERTICAL: "Story / Reel (1080x1920)",
    AspectRatio.HORIZONTAL: "Landscape (1920x1080)",
}

RATIO_ORIENTATIONS = {
    AspectRatio.SQUARE: "square 1:1 feed format",
    AspectRatio.VERTICAL: "vertical 9:16 story format",
    AspectRatio.HORIZONTAL: "horizontal 16:9 landscape format",
}

# Generation order; the square ratio is the representative image
ALL_RATIOS = (AspectRatio.SQUARE, AspectRatio.VERTICAL, AspectRatio.HORIZONTAL)


class TaskType(str, Enum):
    """Task types consumed by the generation worker."""

    CREATE = "create"
    FIX = "fix"


COPY_TEXT_FIELDS = ("headline", "subheadline", "body_text", "cta_text")


@dataclass
class AdCopy:
    """Structured ad copy returned by the copy generator."""

    headline: str
    subheadline: str
    body_text: str
    callout_texts: list[str]
    cta_text: str
    image_prompt: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdCopy":
        # Older rows stored the prompt under gemini_image_prompt
        prompt = data.get("image_prompt") or data.get("gemini_image_prompt") or ""
        return cls(
            headline=data.get("headline", ""),
            subheadline=data.get("subheadline", ""),
            body_text=data.get("body_text", ""),
            callout_texts=list(data.get("callout_texts") or []),
            cta_text=data.get("cta_text", ""),
            image_prompt=prompt,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "headline": self.headline,
            "subheadline": self.subheadline,
            "body_text": self.body_text,
            "callout_texts": list(self.callout_texts),
            "cta_text": self.cta_text,
            "image_prompt": self.image_prompt,
        }

    def ad_copy_view(self) -> dict[str, Any]:
        """Copy fields without the image prompt (what users see)."""
        view = self.to_dict()
        view.pop("image_prompt")
        return view


@dataclass
class CopyUsage:
    """Token usage reported by the copy generator."""

    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class GenerationRequest:
    """Input for a new generation batch."""

    brand_id: str
    product_id: str
    concept_id: str
    important_notes: str = ""


@dataclass
class GenerationVariation:
    """One generated ad (row of ``generated_ads``)."""

    id: str
    user_id: str
    brand_id: str
    product_id: str
    concept_id: str
    batch_id: str
    variation_index: int = 0
    important_notes: str = ""
    copy_json: dict[str, Any] = field(default_factory=dict)
    image_prompt: str = ""
    image_url_1x1: Optional[str] = None
    image_url_9x16: Optional[str] = None
    image_url_16x9: Optional[str] = None
    ad_copy_json: dict[str, Any] = field(default_factory=dict)
    generation_status: GenerationStatus = GenerationStatus.PENDING
    ad_name: Optional[str] = None
    is_saved: bool = False
    is_favorite: bool = False
    brand_snapshot: Optional[dict[str, Any]] = None
    product_snapshot: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "GenerationVariation":
        return cls(
            id=record["_id"],
            user_id=record["user_id"],
            brand_id=record["brand_id"],
            product_id=record["product_id"],
            concept_id=record["concept_id"],
            batch_id=record.get("batch_id") or "",
            variation_index=record.get("variation_index", 0),
            important_notes=record.get("important_notes", ""),
            copy_json=record.get("copy_json") or {},
            image_prompt=record.get("image_prompt", ""),
            image_url_1x1=record.get("image_url_1x1"),
            image_url_9x16=record.get("image_url_9x16"),
            image_url_16x9=record.get("image_url_16x9"),
            ad_copy_json=record.get("ad_copy_json") or {},
            generation_status=GenerationStatus(record.get("generation_status", "pending")),
            ad_name=record.get("ad_name"),
            is_saved=record.get("is_saved", False),
            is_favorite=record.get("is_favorite", False),
            brand_snapshot=record.get("brand_snapshot"),
            product_snapshot=record.get("product_snapshot"),
            error=record.get("error"),
            created_at=record.get("created_at"),
        )

    def image_urls(self) -> dict[AspectRatio, Optional[str]]:
        return {ratio: getattr(self, ratio.url_field) for ratio in ALL_RATIOS}

    def status_view(self) -> dict[str, Any]:
        """Projection returned by status endpoints."""
        return {
            "_id": self.id,
            "batch_id": self.batch_id,
            "variation_index": self.variation_index,
            "generation_status": self.generation_status.value,
            "image_url_1x1": self.image_url_1x1,
            "image_url_9x16": self.image_url_9x16,
            "image_url_16x9": self.image_url_16x9,
            "ad_copy_json": self.ad_copy_json or None,
            "ad_name": self.ad_name,
            "created_at": self.created_at,
        }

    def results_view(self) -> dict[str, Any]:
        """Projection returned once a variation is completed."""
        view = self.status_view()
        view.update(
            {
                "important_notes": self.important_notes,
                "is_saved": self.is_saved,
                "is_favorite": self.is_favorite,
                "brand_snapshot": self.brand_snapshot,
                "product_snapshot": self.product_snapshot,
            }
        )
        return view


def new_variation_record(
    user_id: str,
    brand_id: str,
    product_id: str,
    concept_id: str,
    batch_id: str,
    variation_index: int,
    important_notes: str,
) -> dict[str, Any]:
    """Fresh ``generated_ads`` document in the pending state."""
    return {
        "user_id": user_id,
        "brand_id": brand_id,
        "product_id": product_id,
        "concept_id": concept_id,
        "batch_id": batch_id,
        "variation_index": variation_index,
        "important_notes": important_notes,
        "copy_json": {},
        "image_prompt": "",
        "image_url_1x1": None,
        "image_url_9x16": None,
        "image_url_16x9": None,
        "ad_copy_json": {},
        "generation_status": GenerationStatus.PENDING.value,
        "ad_name": None,
        "is_saved": False,
        "is_favorite": False,
        "brand_snapshot": None,
        "product_snapshot": None,
        "error": None,
    }


@dataclass
class CreateTaskData:
    """Payload of a ``create`` task (one variation)."""

    user_id: str
    brand_id: str
    product_id: str
    concept_id: str
    variation_id: str
    important_notes: str = ""
    batch_id: Optional[str] = None
    variation_index: int = 0
    pregenerated_copy: Optional[dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CreateTaskData":
        return cls(
            user_id=payload["user_id"],
            brand_id=payload["brand_id"],
            product_id=payload["product_id"],
            concept_id=payload["concept_id"],
            variation_id=payload["variation_id"],
            important_notes=payload.get("important_notes", ""),
            batch_id=payload.get("batch_id"),
            variation_index=payload.get("variation_index", 0),
            pregenerated_copy=payload.get("pregenerated_copy"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "brand_id": self.brand_id,
            "product_id": self.product_id,
            "concept_id": self.concept_id,
            "variation_id": self.variation_id,
            "important_notes": self.important_notes,
            "batch_id": self.batch_id,
            "variation_index": self.variation_index,
            "pregenerated_copy": self.pregenerated_copy,
        }


@dataclass
class FixTaskData:
    """Payload of a ``fix`` task."""

    user_id: str
    original_variation_id: str
    variation_id: str
    error_description: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "FixTaskData":
        return cls(
            user_id=payload["user_id"],
            original_variation_id=payload["original_variation_id"],
            variation_id=payload["variation_id"],
            error_description=payload.get("error_description", ""),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "original_variation_id": self.original_variation_id,
            "variation_id": self.variation_id,
            "error_description": self.error_description,
        }
