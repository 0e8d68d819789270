"""Loading of reference images (product photo, logo, concept art)."""

import base64
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import httpx

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


@dataclass
class ReferenceImage:
    """Raw image bytes plus MIME type, ready to inline into a model request."""

    data: bytes
    mime_type: str = "image/jpeg"
    source: str = ""

    def to_inline_part(self) -> dict:
        """Gemini REST ``inlineData`` part."""
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


async def load_reference_image(
    client: httpx.AsyncClient, source: str
) -> Optional[ReferenceImage]:
    """Load one reference image from an http(s) URL, data URL or local path.

    Args:
        client: HTTP client used for remote images
        source: Image location

    Returns:
        The loaded image, or None if it could not be loaded
    """
    source = (source or "").strip()
    if not source:
        return None

    try:
        if source.startswith(("http://", "https://")):
            response = await client.get(source, follow_redirects=True)
            response.raise_for_status()
            mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
            return ReferenceImage(data=response.content, mime_type=mime_type, source=source)

        if source.startswith("data:"):
            match = DATA_URL_PATTERN.match(source)
            if not match:
                logger.warning("Skipping malformed data URL reference image")
                return None
            return ReferenceImage(
                data=base64.b64decode(match.group(2)),
                mime_type=match.group(1),
                source="data-url",
            )

        path = Path(source)
        if not path.is_file():
            logger.warning(f"Reference image not found: {source}")
            return None
        mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        return ReferenceImage(data=path.read_bytes(), mime_type=mime_type, source=source)

    except (httpx.HTTPError, OSError, ValueError) as e:
        logger.error(f"Failed to load reference image {source[:120]}: {e}")
        return None


async def load_reference_images(
    client: httpx.AsyncClient, sources: Iterable[Optional[str]]
) -> list[ReferenceImage]:
    """Load every present source, skipping empty and unloadable ones."""
    images = []
    for source in sources:
        if not source:
            continue
        image = await load_reference_image(client, source)
        if image is not None:
            images.append(image)
    return images
