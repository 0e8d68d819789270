"""Shared pytest fixtures for static-engine tests."""

from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio

from static_engine.db.database import Database
from static_engine.models.generation import AdCopy, AspectRatio, CopyUsage
from static_engine.services.asset_store import AssetStore, AssetStoreError, asset_key
from static_engine.services.credit_service import CreditService
from static_engine.services.generation_processor import GenerationProcessor
from static_engine.services.generation_service import GenerationService
from static_engine.services.image_generator import ImageResult
from static_engine.services.notifier import COMPLETED_EVENT, FAILED_EVENT, PROGRESS_EVENT
from static_engine.services.prompt_validator import PromptValidator
from static_engine.tasks.task_queue import TaskOptions, TaskQueue

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
BRAND_ID = "brand-1"
PRODUCT_ID = "product-1"
CONCEPT_ID = "concept-1"


def make_copy(index: int = 0, image_prompt: Optional[str] = None) -> AdCopy:
    """Valid copy for variation ``index``."""
    return AdCopy(
        headline=f"Headline {index}",
        subheadline="Clinically proven results",
        body_text="Wake up to visibly brighter skin.",
        callout_texts=["Vegan", "Cruelty free", "Dermatologist tested"],
        cta_text="Shop Now",
        image_prompt=image_prompt or f"Serum bottle on marble, variation {index}",
    )


# =============================================================================
# Fakes for external collaborators
# =============================================================================


class FakeCopyGenerator:
    """Copy generator double that records calls."""

    def __init__(self, fail_bulk: bool = False, fail_single: bool = False):
        self.fail_bulk = fail_bulk
        self.fail_single = fail_single
        self.bulk_calls = 0
        self.single_calls: list[int] = []
        self.fix_calls: list[tuple[AdCopy, str, Optional[str]]] = []

    async def generate_variations(self, brand, product, concept, important_notes, count):
        self.bulk_calls += 1
        if self.fail_bulk:
            raise RuntimeError("bulk copy unavailable")
        return [make_copy(i) for i in range(count)], CopyUsage(input_tokens=100, output_tokens=600)

    async def generate_single(self, brand, product, concept, important_notes, variation_index=0):
        self.single_calls.append(variation_index)
        if self.fail_single:
            raise RuntimeError("copy generation failed")
        return make_copy(variation_index)

    async def fix(self, original_copy, description, reference_image_url=None):
        self.fix_calls.append((original_copy, description, reference_image_url))
        fixed = make_copy(0, image_prompt=f"{original_copy.image_prompt} (fixed)")
        fixed.headline = f"{original_copy.headline} (fixed)"
        return fixed

    async def close(self) -> None:
        pass


class FakeImageGenerator:
    """Image generator double; ratios in ``fail_ratios`` return an error."""

    def __init__(self, fail_ratios: tuple[AspectRatio, ...] = ()):
        self.fail_ratios = set(fail_ratios)
        self.calls: list[tuple[str, AspectRatio]] = []
        self.reference_sources: list[list[Optional[str]]] = []
        self.before_generate = None

    async def load_references(self, sources):
        self.reference_sources.append(list(sources))
        return []

    async def generate(self, prompt, references, ratio):
        self.calls.append((prompt, ratio))
        if self.before_generate is not None:
            await self.before_generate()
        if ratio in self.fail_ratios:
            return ImageResult(ratio=ratio, error="Gemini API error 500: internal error")
        return ImageResult(ratio=ratio, data=f"png-{ratio.key}".encode(), mime_type="image/png")

    async def close(self) -> None:
        pass


class MemoryAssetStore(AssetStore):
    """In-memory asset store with CDN-style URLs."""

    def __init__(self, fail_ratios: tuple[AspectRatio, ...] = ()):
        self.fail_ratios = set(fail_ratios)
        self.objects: dict[str, bytes] = {}

    async def upload(self, owner_id, variation_id, ratio, data, mime_type="image/png"):
        if ratio in self.fail_ratios:
            raise AssetStoreError(f"upload failed for {ratio.key}")
        key = asset_key(owner_id, variation_id, ratio, mime_type)
        self.objects[key] = data
        return f"https://cdn.test/{key}"


class RecordingNotifier:
    """Notifier double that keeps every emitted event."""

    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def emit_progress(self, user_id, payload):
        self.events.append((PROGRESS_EVENT, user_id, payload))

    async def emit_completed(self, user_id, payload):
        self.events.append((COMPLETED_EVENT, user_id, payload))

    async def emit_failed(self, user_id, payload):
        self.events.append((FAILED_EVENT, user_id, payload))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, _, payload in self.events if name == event]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sample_config(tmp_path: Path) -> dict:
    """Configuration pointing every store at a temporary directory."""
    return {
        "gemini_api_key": "test_gemini_key",
        "copy_model": "gemini-2.5-flash",
        "image_model": "gemini-2.5-flash-image",
        "database_path": str(tmp_path / "app.db"),
        "queue_path": str(tmp_path / "queue.db"),
        "uploads_dir": str(tmp_path / "uploads"),
        "public_base_url": "http://testserver",
        "r2_account_id": None,
        "r2_access_key_id": None,
        "r2_secret_access_key": None,
        "r2_bucket_name": "generated-ads",
        "r2_public_url": None,
        "worker_concurrency": 2,
        "worker_poll_interval": 0.05,
        "task_attempts": 2,
        "task_backoff_seconds": 0.0,
        "image_max_attempts": 1,
        "image_retry_delays": [0.0],
        "image_timeout_seconds": 5.0,
        "log_level": "INFO",
        "log_json": False,
        "host": "127.0.0.1",
        "port": 3007,
        "cors_origins": ["http://localhost:3000"],
    }


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    database = Database(str(tmp_path / "app.db"))
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def queue(tmp_path: Path):
    task_queue = TaskQueue(
        str(tmp_path / "queue.db"),
        default_options=TaskOptions(attempts=2, backoff_delay=0.0),
    )
    await task_queue.connect()
    yield task_queue
    await task_queue.close()


async def seed_catalog(db: Database) -> Database:
    """Insert two users plus one brand, product and active concept."""
    await db.insert(
        "users",
        {"_id": USER_ID, "credits_limit": 20, "credits_used": 0, "addon_credits_remaining": 0},
    )
    await db.insert(
        "users",
        {"_id": OTHER_USER_ID, "credits_limit": 20, "credits_used": 0, "addon_credits_remaining": 0},
    )
    await db.insert(
        "brands",
        {
            "_id": BRAND_ID,
            "user_id": USER_ID,
            "name": "Glow Labs",
            "industry": "Skincare",
            "logo_url": "https://cdn.test/logo.png",
            "primary_color": "#FF5733",
            "secondary_color": "#2C3E50",
            "accent_color": "#FFD700",
            "background_color": "#FFFFFF",
            "voice_tags": ["confident", "warm"],
        },
    )
    await db.insert(
        "products",
        {
            "_id": PRODUCT_ID,
            "brand_id": BRAND_ID,
            "name": "Vitamin C Serum",
            "photo_url": "https://cdn.test/serum.png",
            "usps": ["Brightens in 7 days"],
        },
    )
    await db.insert(
        "ad_concepts",
        {
            "_id": CONCEPT_ID,
            "name": "Testimonial Card",
            "category": "Social Proof",
            "image_url": "https://cdn.test/concept.png",
            "usage_count": 0,
            "is_active": True,
        },
    )
    return db


@pytest_asyncio.fixture
async def seeded_db(db: Database) -> Database:
    """Database with one user, brand, product and active concept."""
    return await seed_catalog(db)


@pytest.fixture
def copy_generator() -> FakeCopyGenerator:
    return FakeCopyGenerator()


@pytest.fixture
def image_generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def asset_store() -> MemoryAssetStore:
    return MemoryAssetStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def generation_service(seeded_db, queue, copy_generator) -> GenerationService:
    return GenerationService(
        db=seeded_db,
        queue=queue,
        copy_generator=copy_generator,
        credits=CreditService(seeded_db),
        task_options=queue.default_options,
    )


@pytest.fixture
def processor(seeded_db, copy_generator, image_generator, asset_store, notifier) -> GenerationProcessor:
    return GenerationProcessor(
        db=seeded_db,
        copy_generator=copy_generator,
        image_generator=image_generator,
        asset_store=asset_store,
        validator=PromptValidator(),
        notifier=notifier,
    )
