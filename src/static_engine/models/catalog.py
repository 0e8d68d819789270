"""Brand, product and concept records used as generation inputs."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class Brand:
    """A customer brand (row of ``brands``)."""

    id: str
    user_id: str
    name: str
    description: str = ""
    website_url: str = ""
    industry: str = ""
    logo_url: Optional[str] = None
    primary_color: str = "#000000"
    secondary_color: str = "#333333"
    accent_color: str = "#666666"
    background_color: str = "#ffffff"
    voice_tags: list[str] = field(default_factory=list)
    target_audience: str = ""
    competitors: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Brand":
        return cls(
            id=record.get("_id") or record.get("id", ""),
            user_id=record.get("user_id", ""),
            name=record.get("name", ""),
            description=record.get("description", ""),
            website_url=record.get("website_url", ""),
            industry=record.get("industry", ""),
            logo_url=record.get("logo_url"),
            primary_color=record.get("primary_color") or "#000000",
            secondary_color=record.get("secondary_color") or "#333333",
            accent_color=record.get("accent_color") or "#666666",
            background_color=record.get("background_color") or "#ffffff",
            voice_tags=list(record.get("voice_tags") or []),
            target_audience=record.get("target_audience", ""),
            competitors=record.get("competitors", ""),
        )

    def colors(self) -> dict[str, str]:
        """Brand palette keyed by role."""
        return {
            "primary": self.primary_color,
            "secondary": self.secondary_color,
            "accent": self.accent_color,
            "background": self.background_color,
        }

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Product:
    """A product belonging to a brand (row of ``products``)."""

    id: str
    brand_id: str
    name: str
    description: str = ""
    usps: list[str] = field(default_factory=list)
    photo_url: Optional[str] = None
    price_text: str = ""
    product_url: str = ""
    star_rating: Optional[float] = None
    review_count: int = 0
    ingredients_features: str = ""
    before_description: str = ""
    after_description: str = ""
    offer_text: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Product":
        return cls(
            id=record.get("_id") or record.get("id", ""),
            brand_id=record.get("brand_id", ""),
            name=record.get("name", ""),
            description=record.get("description", ""),
            usps=list(record.get("usps") or []),
            photo_url=record.get("photo_url"),
            price_text=record.get("price_text", ""),
            product_url=record.get("product_url", ""),
            star_rating=record.get("star_rating"),
            review_count=record.get("review_count") or 0,
            ingredients_features=record.get("ingredients_features", ""),
            before_description=record.get("before_description", ""),
            after_description=record.get("after_description", ""),
            offer_text=record.get("offer_text", ""),
        )

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Concept:
    """An ad concept / visual style template (row of ``ad_concepts``)."""

    id: str
    name: str
    category: str = ""
    description: str = ""
    image_url: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    usage_count: int = 0
    is_active: bool = True

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Concept":
        return cls(
            id=record.get("_id") or record.get("id", ""),
            name=record.get("name", ""),
            category=record.get("category") or record.get("category_name", ""),
            description=record.get("description", ""),
            image_url=record.get("image_url"),
            tags=list(record.get("tags") or []),
            usage_count=record.get("usage_count") or 0,
            is_active=record.get("is_active", True),
        )
