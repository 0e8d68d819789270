"""Generation worker: drives one variation from ``pending`` to a terminal state.

Every task first claims its variation with a conditional
``pending -> processing`` write. A task that finds its variation in any
other state exits without side effects, which makes queue redelivery safe.
Cancellation is cooperative: the status is re-checked between pipeline
stages and a cancelled variation is abandoned silently. A task cancelled
by a worker shutdown fails its variation before the cancellation propagates.
"""

import asyncio
import logging
from typing import Any, Optional

from static_engine.db.database import Database
from static_engine.models.catalog import Brand, Concept, Product
from static_engine.models.generation import (
    ALL_RATIOS,
    AdCopy,
    AspectRatio,
    CreateTaskData,
    FixTaskData,
    GenerationStatus,
    GenerationVariation,
    TaskType,
)
from static_engine.services.asset_store import AssetStore
from static_engine.services.copy_generator import CopyGenerator
from static_engine.services.image_generator import ImageGenerator, ImageResult
from static_engine.services.notifier import GenerationNotifier
from static_engine.services.prompt_validator import PromptValidator, hex_to_name
from static_engine.services.reference_images import ReferenceImage
from static_engine.tasks.task_queue import QueuedTask
from static_engine.utils.logging import clear_variation_context, set_variation_context

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Generation interrupted by worker shutdown, please regenerate"


class GenerationProcessingError(Exception):
    """A variation could not be generated."""

    pass


class VariationCancelled(Exception):
    """Raised internally when the variation was cancelled mid-pipeline."""

    pass


class ProgressStep:
    FETCHING_DATA = ("fetching_data", 5, "Loading brand, product and concept...")
    GENERATING_COPY = ("generating_copy", 15, "AI ad copy is generating...")
    FIXING_COPY = ("fixing_copy", 15, "AI is fixing the reported errors...")
    GENERATING_IMAGES = ("generating_images", 35, "Generating images (1:1, 9:16, 16:9)...")
    UPLOADING = ("uploading", 65, "Saving images...")
    SAVING = ("saving", 85, "Saving results...")


def build_ratio_prompt(base_prompt: str, ratio: AspectRatio, brand_colors: dict[str, str]) -> str:
    """Ratio-specific prompt with format and brand color instructions.

    Colors are written as names so no hex code reaches the image model.
    """
    palette = ", ".join(
        f"{role} {hex_to_name(value.strip().lstrip('#'))}"
        for role, value in brand_colors.items()
        if value
    )
    lines = [
        base_prompt,
        "",
        f"FORMAT: {ratio.orientation} ({ratio.value}). Recompose the layout for this format "
        "and keep every text element fully inside the frame.",
    ]
    if palette:
        lines.append(f"BRAND COLORS: {palette}.")
    lines.append(
        "CONSISTENCY: this ad is produced in square, vertical and horizontal versions. "
        "Keep the color palette, lighting, typography and mood identical across all of them."
    )
    return "\n".join(lines)


class GenerationProcessor:
    """Handles ``create`` and ``fix`` tasks from the generation queue."""

    def __init__(
        self,
        db: Database,
        copy_generator: CopyGenerator,
        image_generator: ImageGenerator,
        asset_store: AssetStore,
        validator: PromptValidator,
        notifier: GenerationNotifier,
    ):
        self.db = db
        self.copy_generator = copy_generator
        self.image_generator = image_generator
        self.asset_store = asset_store
        self.validator = validator
        self.notifier = notifier

    async def handle(self, task: QueuedTask) -> None:
        """Worker pool entry point."""
        if task.task_type == TaskType.FIX.value:
            data = FixTaskData.from_payload(task.payload)
            set_variation_context(data.variation_id)
            try:
                await self.process_fix(data)
            finally:
                clear_variation_context()
        elif task.task_type == TaskType.CREATE.value:
            data = CreateTaskData.from_payload(task.payload)
            set_variation_context(data.variation_id)
            try:
                await self.process_create(data)
            finally:
                clear_variation_context()
        else:
            raise GenerationProcessingError(f"Unknown task type: {task.task_type}")

    # ------------------------------------------------------------------
    # Create flow
    # ------------------------------------------------------------------

    async def process_create(self, data: CreateTaskData) -> None:
        """Generate one variation from live brand/product/concept records."""
        variation_id = data.variation_id
        logger.info(f"Processing generation task: {variation_id}")

        if await self._claim(variation_id, data.user_id) is None:
            return

        try:
            await self._progress(data.user_id, variation_id, data.batch_id, ProgressStep.FETCHING_DATA)
            brand, product, concept = await asyncio.gather(
                self._fetch("brands", data.brand_id, Brand.from_record, "Brand"),
                self._fetch("products", data.product_id, Product.from_record, "Product"),
                self._fetch("ad_concepts", data.concept_id, Concept.from_record, "Concept"),
            )
            await self._ensure_not_cancelled(variation_id)

            if data.pregenerated_copy:
                logger.info(f"Using pre-generated copy for {variation_id}")
                copy = AdCopy.from_dict(data.pregenerated_copy)
            else:
                await self._progress(
                    data.user_id, variation_id, data.batch_id, ProgressStep.GENERATING_COPY
                )
                copy = await self.copy_generator.generate_single(
                    brand, product, concept, data.important_notes, data.variation_index
                )
            await self._ensure_not_cancelled(variation_id)

            references = await self.image_generator.load_references(
                [product.photo_url, brand.logo_url, concept.image_url]
            )
            image_urls, copy = await self._render(
                data.user_id, variation_id, data.batch_id, copy, brand.colors(), references
            )

            await self._complete(
                data.user_id,
                variation_id,
                data.batch_id,
                copy,
                image_urls,
                ad_name=f"{brand.name} - {product.name}",
                brand_snapshot=brand.snapshot(),
                product_snapshot=product.snapshot(),
            )
            await self._increment_usage(concept)
            await self._emit_completed(data.user_id, variation_id, data.batch_id, image_urls)

        except VariationCancelled:
            logger.info(f"Variation {variation_id} was cancelled, stopping")
        except asyncio.CancelledError:
            await self._interrupted(data.user_id, variation_id, data.batch_id)
            raise
        except Exception as e:
            await self._fail(data.user_id, variation_id, data.batch_id, e)

    # ------------------------------------------------------------------
    # Fix flow
    # ------------------------------------------------------------------

    async def process_fix(self, data: FixTaskData) -> None:
        """Regenerate a completed variation with the user's corrections."""
        variation_id = data.variation_id
        logger.info(
            f"Processing fix-errors task: {variation_id} (original: {data.original_variation_id})"
        )

        claimed = await self._claim(variation_id, data.user_id)
        if claimed is None:
            return

        batch_id = claimed.get("batch_id")
        try:
            await self._progress(data.user_id, variation_id, batch_id, ProgressStep.FETCHING_DATA)
            record = await self.db.get(
                "generated_ads", data.original_variation_id, {"user_id": data.user_id}
            )
            if record is None:
                raise GenerationProcessingError(
                    f"Original ad not found: {data.original_variation_id}"
                )
            original = GenerationVariation.from_record(record)
            brand_snapshot, product_snapshot = await self._snapshots(original)
            brand = Brand.from_record(brand_snapshot)
            product = Product.from_record(product_snapshot)

            await self._progress(data.user_id, variation_id, batch_id, ProgressStep.FIXING_COPY)
            copy = await self.copy_generator.fix(
                AdCopy.from_dict(original.copy_json),
                data.error_description,
                original.image_url_1x1,
            )
            await self._ensure_not_cancelled(variation_id)

            references = await self.image_generator.load_references(
                [product.photo_url, brand.logo_url]
            )
            image_urls, copy = await self._render(
                data.user_id, variation_id, batch_id, copy, brand.colors(), references
            )

            await self._complete(
                data.user_id,
                variation_id,
                batch_id,
                copy,
                image_urls,
                ad_name=f"[Fixed] {original.ad_name or brand.name}",
                brand_snapshot=brand_snapshot,
                product_snapshot=product_snapshot,
            )
            await self._emit_completed(data.user_id, variation_id, batch_id, image_urls)

        except VariationCancelled:
            logger.info(f"Variation {variation_id} was cancelled, stopping")
        except asyncio.CancelledError:
            await self._interrupted(data.user_id, variation_id, batch_id)
            raise
        except Exception as e:
            await self._fail(data.user_id, variation_id, batch_id, e)

    # ------------------------------------------------------------------
    # Shared pipeline stages
    # ------------------------------------------------------------------

    async def _claim(self, variation_id: str, user_id: str) -> Optional[dict[str, Any]]:
        """Move the variation from ``pending`` to ``processing``.

        Returns:
            The claimed record, or None if the variation is not pending
            (already handled, cancelled or claimed by another delivery)

        Raises:
            GenerationProcessingError: If the variation does not exist for this user
        """
        record = await self.db.get("generated_ads", variation_id, {"user_id": user_id})
        if record is None:
            raise GenerationProcessingError(
                f"Task authentication failed: ad {variation_id} not found for user {user_id}"
            )

        status = record.get("generation_status")
        if status != GenerationStatus.PENDING.value:
            logger.warning(f"Skipping task, ad {variation_id} is already {status}")
            return None

        claimed = await self.db.update(
            "generated_ads",
            {
                "_id": variation_id,
                "user_id": user_id,
                "generation_status": GenerationStatus.PENDING.value,
            },
            {"generation_status": GenerationStatus.PROCESSING.value},
        )
        if not claimed:
            logger.warning(f"Skipping task, ad {variation_id} changed state before claim")
            return None
        return {**record, "generation_status": GenerationStatus.PROCESSING.value}

    async def _ensure_not_cancelled(self, variation_id: str) -> None:
        record = await self.db.get("generated_ads", variation_id)
        if record is None or record.get("generation_status") == GenerationStatus.CANCELLED.value:
            raise VariationCancelled(variation_id)

    async def _render(
        self,
        user_id: str,
        variation_id: str,
        batch_id: Optional[str],
        copy: AdCopy,
        brand_colors: dict[str, str],
        references: list[ReferenceImage],
    ) -> tuple[dict[AspectRatio, str], AdCopy]:
        """Validate copy, generate the three ratios in parallel and upload them.

        Returns:
            Tuple of (URL per successful ratio, cleaned copy)
        """
        result = self.validator.validate(copy, brand_colors)
        if result.issues:
            logger.info(f"Prompt validator fixed or flagged {len(result.issues)} issue(s)")
        copy = result.copy

        await self._progress(user_id, variation_id, batch_id, ProgressStep.GENERATING_IMAGES)
        logger.info(f"Sending {len(references)} reference image(s) with each ratio")
        images = await asyncio.gather(
            *(
                self.image_generator.generate(
                    build_ratio_prompt(copy.image_prompt, ratio, brand_colors), references, ratio
                )
                for ratio in ALL_RATIOS
            )
        )
        await self._ensure_not_cancelled(variation_id)

        await self._progress(user_id, variation_id, batch_id, ProgressStep.UPLOADING)
        image_urls = await self._upload_all(user_id, variation_id, list(images))
        if not image_urls:
            raise GenerationProcessingError("All image generations failed, no images to save")
        return image_urls, copy

    async def _upload_all(
        self, user_id: str, variation_id: str, images: list[ImageResult]
    ) -> dict[AspectRatio, str]:
        generated = []
        for image in images:
            if image.ok:
                generated.append(image)
            else:
                logger.warning(f"{image.ratio.value} generation failed: {image.error or 'no data'}")

        outcomes = await asyncio.gather(
            *(
                self.asset_store.upload(user_id, variation_id, image.ratio, image.data, image.mime_type)
                for image in generated
            ),
            return_exceptions=True,
        )

        urls: dict[AspectRatio, str] = {}
        for image, outcome in zip(generated, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Upload {image.ratio.key} failed: {outcome}")
            else:
                urls[image.ratio] = outcome
        return urls

    async def _complete(
        self,
        user_id: str,
        variation_id: str,
        batch_id: Optional[str],
        copy: AdCopy,
        image_urls: dict[AspectRatio, str],
        ad_name: str,
        brand_snapshot: dict[str, Any],
        product_snapshot: dict[str, Any],
    ) -> None:
        await self._progress(user_id, variation_id, batch_id, ProgressStep.SAVING)

        values: dict[str, Any] = {
            "copy_json": copy.to_dict(),
            "image_prompt": copy.image_prompt,
            "ad_copy_json": copy.ad_copy_view(),
            "generation_status": GenerationStatus.COMPLETED.value,
            "ad_name": ad_name,
            "brand_snapshot": brand_snapshot,
            "product_snapshot": product_snapshot,
            "error": None,
        }
        for ratio in ALL_RATIOS:
            values[ratio.url_field] = image_urls.get(ratio)

        updated = await self.db.update(
            "generated_ads",
            {"_id": variation_id, "generation_status": GenerationStatus.PROCESSING.value},
            values,
        )
        if not updated:
            await self._ensure_not_cancelled(variation_id)
            raise GenerationProcessingError(f"Failed to update generated ad {variation_id}")

        logger.info(f"Generation completed: {variation_id} ({len(image_urls)} images)")

    async def _fail(
        self, user_id: str, variation_id: str, batch_id: Optional[str], error: Exception
    ) -> None:
        """Mark the variation failed, notify the user and re-raise for the queue."""
        message = str(error) or type(error).__name__
        logger.error(f"Generation failed: {variation_id} - {message}")

        if await self._mark_failed(user_id, variation_id, batch_id, message):
            raise error

    async def _interrupted(self, user_id: str, variation_id: str, batch_id: Optional[str]) -> None:
        """Fail a variation whose task was cancelled by a worker shutdown.

        The redelivered task finds the variation no longer pending and skips
        it, so the variation must reach a terminal state here.
        """
        logger.warning(f"Generation interrupted: {variation_id}")
        await self._mark_failed(user_id, variation_id, batch_id, INTERRUPTED_MESSAGE)

    async def _mark_failed(
        self, user_id: str, variation_id: str, batch_id: Optional[str], message: str
    ) -> bool:
        """Conditional ``processing -> failed`` write plus the failed event.

        Returns:
            False if the variation was no longer processing (cancelled)
        """
        try:
            updated = await self.db.update(
                "generated_ads",
                {"_id": variation_id, "generation_status": GenerationStatus.PROCESSING.value},
                {"generation_status": GenerationStatus.FAILED.value, "error": message},
            )
        except Exception as e:
            logger.error(f"Failed to mark {variation_id} as failed: {e}")
            updated = 1

        if not updated:
            # Cancelled while running; the user is no longer waiting for it
            logger.info(f"Variation {variation_id} is no longer processing, not marking failed")
            return False

        await self.notifier.emit_failed(
            user_id, {"job_id": variation_id, "batch_id": batch_id, "error": message}
        )
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch(self, table: str, record_id: str, factory, label: str):
        record = await self.db.get(table, record_id)
        if record is None:
            raise GenerationProcessingError(f"{label} not found")
        return factory(record)

    async def _snapshots(
        self, original: GenerationVariation
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Brand and product data frozen on the original, or live records if missing."""
        brand_snapshot = original.brand_snapshot
        product_snapshot = original.product_snapshot
        if not brand_snapshot:
            brand = await self._fetch("brands", original.brand_id, Brand.from_record, "Brand")
            brand_snapshot = brand.snapshot()
        if not product_snapshot:
            product = await self._fetch(
                "products", original.product_id, Product.from_record, "Product"
            )
            product_snapshot = product.snapshot()
        return brand_snapshot, product_snapshot

    async def _increment_usage(self, concept: Concept) -> None:
        """Best-effort concept usage counter."""
        try:
            await self.db.increment("ad_concepts", concept.id, "usage_count")
            return
        except Exception as e:
            logger.warning(f"Atomic usage increment failed for concept {concept.id}: {e}")

        try:
            await self.db.update(
                "ad_concepts", {"_id": concept.id}, {"usage_count": concept.usage_count + 1}
            )
        except Exception as e:
            logger.warning(f"Usage counter update failed for concept {concept.id}: {e}")

    async def _progress(
        self, user_id: str, variation_id: str, batch_id: Optional[str], step: tuple
    ) -> None:
        name, percent, message = step
        await self.notifier.emit_progress(
            user_id,
            {
                "job_id": variation_id,
                "batch_id": batch_id,
                "step": name,
                "message": message,
                "progress_percent": percent,
            },
        )

    async def _emit_completed(
        self,
        user_id: str,
        variation_id: str,
        batch_id: Optional[str],
        image_urls: dict[AspectRatio, str],
    ) -> None:
        image_url = image_urls.get(AspectRatio.SQUARE) or next(iter(image_urls.values()), "")
        await self.notifier.emit_completed(
            user_id,
            {
                "job_id": variation_id,
                "ad_id": variation_id,
                "batch_id": batch_id,
                "image_url": image_url,
            },
        )
