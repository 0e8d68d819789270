"""Ad copy generation using Google GenAI.

Turns (brand, product, concept, notes) into structured ad copy plus a
detailed image-generation prompt. Supports three modes: a batch of N
distinct variations in one call, a single variation for a given index, and
fixing an existing variation from a user's error description.
"""

import json
import logging
import re
from typing import Any, Optional

import httpx
from google.genai import Client
from google.genai import types

from static_engine.db.database import Database
from static_engine.models.catalog import Brand, Concept, Product
from static_engine.models.generation import AdCopy, CopyUsage
from static_engine.services.reference_images import load_reference_image
from static_engine.utils.retry import APIRateLimitError, NetworkError, retry_api_call

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "headline",
    "subheadline",
    "body_text",
    "callout_texts",
    "cta_text",
    "image_prompt",
)

OUTPUT_CONTRACT = """You MUST respond with valid JSON only, no markdown, no code blocks. The JSON must have these exact fields:
{
  "headline": "Short, punchy headline (max 10 words)",
  "subheadline": "Supporting text (max 15 words)",
  "body_text": "Persuasive body copy (2-3 sentences)",
  "callout_texts": ["Callout 1", "Callout 2", "Callout 3"],
  "cta_text": "Call to action button text",
  "image_prompt": "Extremely detailed image generation prompt including: layout, text placement, background, style, mood. Refer to the product as 'the product shown in the reference photo'. Describe colors by name, never as hex codes. Must include exact text to overlay on the image."
}"""

FALLBACK_SYSTEM_PROMPT = """You are an expert Facebook ad creative director with 15+ years of experience in direct response advertising. You create scroll-stopping static ad creatives that drive conversions. Your ads are on-brand, visually striking, and optimized for the Meta platform.

When generating ads:
1. Analyze the brand voice and visual identity
2. Understand the product's unique selling propositions
3. Study the reference concept and adapt it to the brand
4. Create compelling headlines that stop the scroll
5. Write persuasive body copy that drives action
6. Generate a detailed image prompt that includes exact text overlay, positioning, colors, and styling"""

# Creative angle per variation index so sibling variations differ
VARIATION_ANGLES = [
    "Lead with the single strongest benefit of the product.",
    "Lead with social proof: ratings, reviews and customer results.",
    "Lead with the problem the audience has, then present the product as the solution.",
    "Lead with the offer and urgency.",
    "Lead with curiosity: a surprising claim or question that makes people stop scrolling.",
    "Lead with emotion: the aspirational after-state the customer wants.",
]


class CopyGeneratorError(Exception):
    """Error from the copy generator (API failure or unusable response)."""

    pass


def strip_markdown_code_blocks(text: str) -> str:
    """Strip markdown code blocks from AI response text.

    Args:
        text: Raw text that may contain markdown code blocks

    Returns:
        Cleaned text with markdown code blocks removed
    """
    text = text.strip()
    match = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if match:
        return match.group(1).strip()
    return text


def _copy_from_data(data: Any) -> AdCopy:
    if not isinstance(data, dict):
        raise CopyGeneratorError("Copy response is not a JSON object")
    if not data.get("image_prompt") and data.get("gemini_image_prompt"):
        data = {**data, "image_prompt": data["gemini_image_prompt"]}
    for field_name in REQUIRED_FIELDS:
        if not data.get(field_name):
            raise CopyGeneratorError(f"Copy response missing required field: {field_name}")
    if not isinstance(data["callout_texts"], list):
        raise CopyGeneratorError("callout_texts must be a list")
    return AdCopy.from_dict(data)


def parse_copy_response(text: str) -> AdCopy:
    """Parse a single-copy JSON response.

    Raises:
        CopyGeneratorError: If the text is not valid JSON or misses fields
    """
    try:
        data = json.loads(strip_markdown_code_blocks(text or ""))
    except json.JSONDecodeError as e:
        raise CopyGeneratorError(f"Failed to parse copy response as JSON: {e}")
    return _copy_from_data(data)


def parse_variations_response(text: str, count: int) -> list[AdCopy]:
    """Parse a batch response (a JSON array, or an object with ``variations``).

    Raises:
        CopyGeneratorError: If fewer than ``count`` valid variations are present
    """
    try:
        data = json.loads(strip_markdown_code_blocks(text or ""))
    except json.JSONDecodeError as e:
        raise CopyGeneratorError(f"Failed to parse variations response as JSON: {e}")

    if isinstance(data, dict):
        data = data.get("variations")
    if not isinstance(data, list):
        raise CopyGeneratorError("Variations response is not a JSON array")
    if len(data) < count:
        raise CopyGeneratorError(f"Expected {count} variations, got {len(data)}")

    return [_copy_from_data(item) for item in data[:count]]


def build_user_prompt(
    brand: Brand, product: Product, concept: Concept, important_notes: str
) -> str:
    """Describe the brand, product, concept and notes for the model."""
    lines = [
        "Create a Facebook ad creative based on the following:",
        "",
        "=== BRAND ===",
        f"Name: {brand.name}",
        f"Industry: {brand.industry}",
        f"Description: {brand.description}",
        f"Voice & Tone: {', '.join(brand.voice_tags) or 'professional'}",
        f"Target Audience: {brand.target_audience or 'General audience'}",
        (
            f"Colors: Primary {brand.primary_color}, Secondary {brand.secondary_color}, "
            f"Accent {brand.accent_color}, Background {brand.background_color}"
        ),
    ]
    if brand.competitors:
        lines.append(f"Competitors: {brand.competitors}")

    rating = "N/A"
    if product.star_rating:
        rating = f"{product.star_rating}/5 ({product.review_count or 0} reviews)"

    lines += [
        "",
        "=== PRODUCT ===",
        f"Name: {product.name}",
        f"Description: {product.description}",
        f"USPs: {', '.join(product.usps) or 'N/A'}",
        f"Price: {product.price_text or 'N/A'}",
        f"Rating: {rating}",
    ]
    if product.photo_url:
        lines.append("Product Photo: provided as a reference image")
    if product.offer_text:
        lines.append(f"Offer: {product.offer_text}")
    if product.ingredients_features:
        lines.append(f"Features/Ingredients: {product.ingredients_features}")
    if product.before_description:
        lines.append(f"Before: {product.before_description}")
    if product.after_description:
        lines.append(f"After: {product.after_description}")

    lines += [
        "",
        "=== CONCEPT STYLE ===",
        f"Category: {concept.category}",
        f"Name: {concept.name}",
        f"Description: {concept.description}",
        f"Tags: {', '.join(concept.tags) or 'N/A'}",
    ]
    if concept.image_url:
        lines.append("Reference Image: provided as a reference image")

    if important_notes:
        lines += ["", "=== USER NOTES ===", important_notes]

    return "\n".join(lines)


class CopyGenerator:
    """Generates structured ad copy with Gemini."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        db: Optional[Database] = None,
        client: Optional[Client] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize Google GenAI client.

        Args:
            api_key: Google GenAI API key
            model_name: Gemini model to use
            db: Database for loading prompt templates (optional)
            client: Pre-built GenAI client (tests)
            http_client: HTTP client for loading the fix-mode reference image
        """
        self.model_name = model_name
        self.db = db
        self.client = client or Client(api_key=api_key)
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)
        logger.info(f"Initialized copy generator with model: {model_name}")

    async def close(self) -> None:
        await self.http_client.aclose()

    async def get_system_prompt(self) -> str:
        """Newest active system prompt template, or the built-in one."""
        base = FALLBACK_SYSTEM_PROMPT
        if self.db is not None:
            try:
                templates = await self.db.find(
                    "prompt_templates",
                    {"template_type": "system", "is_active": True},
                    order_by="version",
                    descending=True,
                    limit=1,
                )
                if templates and templates[0].get("content"):
                    logger.debug("System prompt loaded from prompt_templates")
                    base = templates[0]["content"]
            except Exception as e:
                logger.warning(f"Failed to load prompt template, using fallback: {e}")
        return f"{base}\n\n{OUTPUT_CONTRACT}"

    async def generate_variations(
        self,
        brand: Brand,
        product: Product,
        concept: Concept,
        important_notes: str,
        count: int,
    ) -> tuple[list[AdCopy], CopyUsage]:
        """Generate ``count`` distinct variations in a single call.

        Returns:
            Tuple of (copies in index order, token usage)

        Raises:
            CopyGeneratorError: If the call fails or the response is unusable
        """
        angles = "\n".join(
            f"Variation {index + 1}: {VARIATION_ANGLES[index % len(VARIATION_ANGLES)]}"
            for index in range(count)
        )
        prompt = (
            f"{build_user_prompt(brand, product, concept, important_notes)}\n\n"
            f"Generate {count} DISTINCT ad creatives. Each variation must use a different "
            f"headline, angle and layout:\n{angles}\n\n"
            f"Return a JSON array of exactly {count} objects, each with the fields "
            f"described above."
        )

        text, usage = await self._generate(prompt, temperature=1.0)
        copies = parse_variations_response(text, count)
        logger.info(
            f"Generated {len(copies)} copy variations "
            f"({usage.input_tokens} in / {usage.output_tokens} out tokens)"
        )
        return copies, usage

    async def generate_single(
        self,
        brand: Brand,
        product: Product,
        concept: Concept,
        important_notes: str,
        variation_index: int = 0,
    ) -> AdCopy:
        """Generate the copy for one variation index."""
        angle = VARIATION_ANGLES[variation_index % len(VARIATION_ANGLES)]
        prompt = (
            f"{build_user_prompt(brand, product, concept, important_notes)}\n\n"
            f"Creative angle for this variation: {angle}\n\n"
            f"Generate the ad creative as JSON. The image_prompt should be highly detailed, "
            f"describing a static image ad with text overlays, product placement, and the "
            f"brand's color scheme."
        )
        text, _ = await self._generate(prompt, temperature=0.9)
        return parse_copy_response(text)

    async def fix(
        self,
        original_copy: AdCopy,
        description: str,
        reference_image_url: Optional[str] = None,
    ) -> AdCopy:
        """Rewrite an existing variation to fix the problems a user reported.

        Args:
            original_copy: Copy of the variation being fixed
            description: User's description of what is wrong
            reference_image_url: Previously generated image, for visual grounding

        Returns:
            Corrected copy
        """
        prompt = (
            "The following ad creative was generated earlier, but the user reported problems "
            "with it.\n\n"
            f"=== ORIGINAL AD (JSON) ===\n{json.dumps(original_copy.to_dict(), indent=2)}\n\n"
            f"=== REPORTED PROBLEMS ===\n{description or 'General fix'}\n\n"
            "Fix every reported problem. Keep everything that was not reported as a problem "
            "(layout, style, tone and facts) as close to the original as possible. "
            "Return the corrected ad creative as JSON."
        )

        images = []
        if reference_image_url:
            image = await load_reference_image(self.http_client, reference_image_url)
            if image is not None:
                prompt += "\n\nThe attached image is the original generated ad."
                images.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))

        text, _ = await self._generate(prompt, temperature=0.7, images=images)
        return parse_copy_response(text)

    @retry_api_call(max_retries=3, base_delay=2.0)
    async def _generate(
        self,
        prompt: str,
        temperature: float,
        images: Optional[list] = None,
    ) -> tuple[str, CopyUsage]:
        system_prompt = await self.get_system_prompt()
        contents: Any = [prompt, *images] if images else prompt

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=temperature,
                    response_mime_type="application/json",
                ),
            )
        except Exception as e:
            message = str(e).lower()
            if "429" in message or "rate" in message or "quota" in message:
                raise APIRateLimitError(f"Rate limit hit: {e}")
            if "503" in message or "network" in message or "connection" in message:
                raise NetworkError(f"Network error: {e}")
            raise CopyGeneratorError(f"Copy generation failed: {e}")

        if not response.text:
            raise CopyGeneratorError("Copy generator returned an empty response")

        usage = CopyUsage()
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = CopyUsage(
                input_tokens=metadata.prompt_token_count or 0,
                output_tokens=metadata.candidates_token_count or 0,
            )
        return response.text, usage
