"""Generation orchestration: batches, credits, queueing and read projections.

The service validates requests, creates pending variation records, debits
credits and enqueues one task per variation. Generation itself happens in
:class:`~static_engine.services.generation_processor.GenerationProcessor`.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Optional

from static_engine.db.database import Database
from static_engine.models.catalog import Brand, Concept, Product
from static_engine.models.generation import (
    ALL_RATIOS,
    AdCopy,
    CreateTaskData,
    FixTaskData,
    GenerationRequest,
    GenerationStatus,
    GenerationVariation,
    TaskType,
    new_variation_record,
)
from static_engine.services.copy_generator import CopyGenerator
from static_engine.services.credit_service import (
    FIX_ERRORS_CREDIT_COST,
    GENERATION_CREDIT_COST,
    REGENERATE_CREDIT_COST,
    CreditDebit,
    CreditService,
    CreditTransactionType,
    InsufficientCreditsError,
)
from static_engine.tasks.task_queue import TaskOptions, TaskQueue, TaskSpec

logger = logging.getLogger(__name__)

VARIATIONS_PER_BATCH = 6

ACTIVE_STATUSES = (GenerationStatus.PENDING.value, GenerationStatus.PROCESSING.value)


class ErrorCode(str, Enum):
    """Caller-facing error codes."""

    BRAND_NOT_FOUND = "BRAND_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    CONCEPT_NOT_FOUND = "CONCEPT_NOT_FOUND"
    GENERATION_NOT_FOUND = "GENERATION_NOT_FOUND"
    GENERATION_NOT_COMPLETED = "GENERATION_NOT_COMPLETED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    CREATE_FAILED = "CREATE_FAILED"
    SOMETHING_WENT_WRONG = "SOMETHING_WENT_WRONG"


ERROR_MESSAGES = {
    ErrorCode.BRAND_NOT_FOUND: "Brand not found or does not belong to you!",
    ErrorCode.PRODUCT_NOT_FOUND: "Product not found or does not belong to this brand!",
    ErrorCode.CONCEPT_NOT_FOUND: "Concept not found!",
    ErrorCode.GENERATION_NOT_FOUND: "Generation not found or does not belong to you!",
    ErrorCode.GENERATION_NOT_COMPLETED: "Generation is not completed yet!",
    ErrorCode.INSUFFICIENT_CREDITS: "Insufficient credits for this action!",
    ErrorCode.CREATE_FAILED: "Create failed!",
    ErrorCode.SOMETHING_WENT_WRONG: "Something went wrong!",
}

NOT_FOUND_CODES = frozenset(
    {
        ErrorCode.BRAND_NOT_FOUND,
        ErrorCode.PRODUCT_NOT_FOUND,
        ErrorCode.CONCEPT_NOT_FOUND,
        ErrorCode.GENERATION_NOT_FOUND,
    }
)

GENERATION_STARTED = "Generation started successfully!"


class GenerationServiceError(Exception):
    """Synchronous validation / state error returned to the caller."""

    def __init__(self, code: ErrorCode, message: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        super().__init__(self.message)

    @property
    def is_not_found(self) -> bool:
        return self.code in NOT_FOUND_CODES


class GenerationService:
    """Orchestrates generation requests."""

    def __init__(
        self,
        db: Database,
        queue: TaskQueue,
        copy_generator: CopyGenerator,
        credits: CreditService,
        task_options: Optional[TaskOptions] = None,
        variations_per_batch: int = VARIATIONS_PER_BATCH,
    ):
        """Initialize the orchestrator.

        Args:
            db: Document store
            queue: Task queue the worker pool consumes
            copy_generator: Used for the best-effort bulk copy call
            credits: Credit debits and ledger
            task_options: Delivery policy for enqueued tasks
            variations_per_batch: Variations created per request
        """
        self.db = db
        self.queue = queue
        self.copy_generator = copy_generator
        self.credits = credits
        self.task_options = task_options or TaskOptions()
        self.variations_per_batch = variations_per_batch

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_batch(self, request: GenerationRequest, owner_id: str) -> dict[str, Any]:
        """Create a batch of pending variations and queue them.

        Returns as soon as the tasks are queued; generation runs in the
        worker pool.

        Args:
            request: Brand, product, concept and notes
            owner_id: Requesting user

        Returns:
            Dict with ``batch_id``, ``variation_ids``, ``status`` and ``message``

        Raises:
            GenerationServiceError: On validation, credit or queueing failure
        """
        brand, product, concept = await self._validate_inputs(request, owner_id)
        notes = request.important_notes or ""
        batch_id = str(uuid.uuid4())

        try:
            records = await self.db.insert_many(
                "generated_ads",
                [
                    new_variation_record(
                        user_id=owner_id,
                        brand_id=brand.id,
                        product_id=product.id,
                        concept_id=concept.id,
                        batch_id=batch_id,
                        variation_index=index,
                        important_notes=notes,
                    )
                    for index in range(self.variations_per_batch)
                ],
            )
        except Exception as e:
            logger.error(f"Failed to create variation records for batch {batch_id}: {e}")
            raise GenerationServiceError(ErrorCode.CREATE_FAILED)

        variation_ids = [record["_id"] for record in records]

        debit = await self._debit_or_rollback(owner_id, GENERATION_CREDIT_COST, variation_ids)
        await self.credits.record_transaction(
            debit, CreditTransactionType.GENERATION, batch_id, "generation_batch"
        )

        copies = await self._pregenerate_copies(brand, product, concept, notes)

        specs = []
        for index, variation_id in enumerate(variation_ids):
            data = CreateTaskData(
                user_id=owner_id,
                brand_id=brand.id,
                product_id=product.id,
                concept_id=concept.id,
                variation_id=variation_id,
                important_notes=notes,
                batch_id=batch_id,
                variation_index=index,
                pregenerated_copy=copies[index].to_dict() if copies else None,
            )
            specs.append(TaskSpec(TaskType.CREATE.value, data.to_payload(), self.task_options))

        await self._enqueue_or_rollback(specs, debit, variation_ids, CreditTransactionType.GENERATION, batch_id)

        logger.info(
            f"Generation batch queued: {batch_id} ({len(variation_ids)} variations, "
            f"pre-generated copy: {bool(copies)})"
        )
        return {
            "batch_id": batch_id,
            "variation_ids": variation_ids,
            "status": GenerationStatus.PENDING.value,
            "message": GENERATION_STARTED,
        }

    async def fix_errors(
        self, variation_id: str, description: str, owner_id: str
    ) -> dict[str, Any]:
        """Create a corrected copy of a completed variation.

        Returns:
            Dict with the new ``variation_id``, ``batch_id`` and ``status``
        """
        original = await self._get_completed(variation_id, owner_id)
        notes = f"[FIX] {description or 'General fix'}"

        record = await self._create_single(original, notes, owner_id)
        new_id = record["_id"]
        debit = await self._debit_or_rollback(owner_id, FIX_ERRORS_CREDIT_COST, [new_id])
        await self.credits.record_transaction(
            debit, CreditTransactionType.FIX_ERRORS, new_id, "generated_ad"
        )

        data = FixTaskData(
            user_id=owner_id,
            original_variation_id=original.id,
            variation_id=new_id,
            error_description=description or "",
        )
        await self._enqueue_or_rollback(
            [TaskSpec(TaskType.FIX.value, data.to_payload(), self.task_options)],
            debit,
            [new_id],
            CreditTransactionType.FIX_ERRORS,
            new_id,
        )

        logger.info(f"Fix-errors task queued: {new_id} (original: {original.id})")
        return self._single_response(record)

    async def regenerate_single(self, variation_id: str, owner_id: str) -> dict[str, Any]:
        """Generate a fresh variation with the same inputs as a completed one."""
        original = await self._get_completed(variation_id, owner_id)

        record = await self._create_single(original, original.important_notes, owner_id)
        new_id = record["_id"]
        debit = await self._debit_or_rollback(owner_id, REGENERATE_CREDIT_COST, [new_id])
        await self.credits.record_transaction(
            debit, CreditTransactionType.REGENERATE_SINGLE, new_id, "generated_ad"
        )

        data = CreateTaskData(
            user_id=owner_id,
            brand_id=original.brand_id,
            product_id=original.product_id,
            concept_id=original.concept_id,
            variation_id=new_id,
            important_notes=original.important_notes,
            batch_id=record["batch_id"],
            variation_index=original.variation_index,
        )
        await self._enqueue_or_rollback(
            [TaskSpec(TaskType.CREATE.value, data.to_payload(), self.task_options)],
            debit,
            [new_id],
            CreditTransactionType.REGENERATE_SINGLE,
            new_id,
        )

        logger.info(f"Regenerate-single task queued: {new_id} (original: {original.id})")
        return self._single_response(record)

    async def cancel_batch(self, batch_id: str, owner_id: str) -> dict[str, Any]:
        """Flip every pending/processing variation of the batch to ``cancelled``.

        Running tasks are not interrupted; the worker notices the status at
        its next check and stops.

        Returns:
            Dict with ``batch_id`` and ``cancelled_count``
        """
        owned = await self.db.count("generated_ads", {"batch_id": batch_id, "user_id": owner_id})
        if owned == 0:
            raise GenerationServiceError(ErrorCode.GENERATION_NOT_FOUND)

        cancelled = await self.db.update(
            "generated_ads",
            {
                "batch_id": batch_id,
                "user_id": owner_id,
                "generation_status__in": ACTIVE_STATUSES,
            },
            {"generation_status": GenerationStatus.CANCELLED.value},
        )
        logger.info(f"Cancelled {cancelled} variation(s) in batch {batch_id}")
        return {"batch_id": batch_id, "cancelled_count": cancelled}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, variation_id: str, owner_id: str) -> dict[str, Any]:
        return (await self._get_owned(variation_id, owner_id)).status_view()

    async def get_results(self, variation_id: str, owner_id: str) -> dict[str, Any]:
        return (await self._get_completed(variation_id, owner_id)).results_view()

    async def get_batch_status(self, batch_id: str, owner_id: str) -> dict[str, Any]:
        """Aggregate status of every variation in a batch.

        The batch is ``processing`` until every variation is terminal, then
        ``completed`` if any variation completed, otherwise ``failed`` or
        ``cancelled``.
        """
        records = await self.db.find(
            "generated_ads",
            {"batch_id": batch_id, "user_id": owner_id},
            order_by="variation_index",
        )
        if not records:
            raise GenerationServiceError(ErrorCode.GENERATION_NOT_FOUND)

        variations = [GenerationVariation.from_record(record) for record in records]
        counts = {status.value: 0 for status in GenerationStatus}
        for variation in variations:
            counts[variation.generation_status.value] += 1

        return {
            "batch_id": batch_id,
            "status": aggregate_batch_status([v.generation_status for v in variations]).value,
            "total": len(variations),
            "counts": counts,
            "variations": [variation.status_view() for variation in variations],
        }

    async def export_ratios(self, variation_id: str, owner_id: str) -> dict[str, Any]:
        """Per-ratio download links of a completed variation."""
        variation = await self._get_completed(variation_id, owner_id)
        urls = variation.image_urls()
        return {
            "_id": variation.id,
            "ad_name": variation.ad_name,
            "ratios": [
                {"ratio": ratio.value, "label": ratio.label, "image_url": urls[ratio]}
                for ratio in ALL_RATIOS
            ],
        }

    async def get_recent(self, owner_id: str, limit: int = 6) -> list[dict[str, Any]]:
        """Most recent completed variations with brand and concept names."""
        records = await self.db.find(
            "generated_ads",
            {"user_id": owner_id, "generation_status": GenerationStatus.COMPLETED.value},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        if not records:
            return []

        brand_ids = sorted({record["brand_id"] for record in records})
        concept_ids = sorted({record["concept_id"] for record in records})
        brands, concepts = await asyncio.gather(
            self.db.find("brands", {"_id__in": brand_ids}),
            self.db.find("ad_concepts", {"_id__in": concept_ids}),
        )
        brand_names = {brand["_id"]: brand.get("name") for brand in brands}
        concept_names = {concept["_id"]: concept.get("name") for concept in concepts}

        return [
            {
                "_id": record["_id"],
                "ad_name": record.get("ad_name"),
                "image_url": record.get("image_url_1x1"),
                "created_at": record.get("created_at"),
                "brand_name": brand_names.get(record["brand_id"]) or "Unknown Brand",
                "concept_name": concept_names.get(record["concept_id"]) or "Unknown Concept",
            }
            for record in records
        ]

    async def list_generations(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 50,
        brand_id: Optional[str] = None,
        product_id: Optional[str] = None,
        concept_id: Optional[str] = None,
        search: Optional[str] = None,
        oldest_first: bool = False,
    ) -> dict[str, Any]:
        """Paginated library of completed variations."""
        filters: dict[str, Any] = {
            "user_id": owner_id,
            "generation_status": GenerationStatus.COMPLETED.value,
        }
        if brand_id:
            filters["brand_id"] = brand_id
        if product_id:
            filters["product_id"] = product_id
        if concept_id:
            filters["concept_id"] = concept_id
        if search:
            filters["ad_name__like"] = f"%{search}%"

        page = max(page, 1)
        total, records = await asyncio.gather(
            self.db.count("generated_ads", filters),
            self.db.find(
                "generated_ads",
                filters,
                order_by="created_at",
                descending=not oldest_first,
                limit=limit,
                offset=(page - 1) * limit,
            ),
        )
        return {
            "list": [GenerationVariation.from_record(r).status_view() for r in records],
            "total": total,
            "page": page,
            "limit": limit,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _validate_inputs(
        self, request: GenerationRequest, owner_id: str
    ) -> tuple[Brand, Product, Concept]:
        brand = await self.db.get("brands", request.brand_id, {"user_id": owner_id})
        if brand is None:
            raise GenerationServiceError(ErrorCode.BRAND_NOT_FOUND)

        product = await self.db.get("products", request.product_id, {"brand_id": request.brand_id})
        if product is None:
            raise GenerationServiceError(ErrorCode.PRODUCT_NOT_FOUND)

        concept = await self.db.get("ad_concepts", request.concept_id, {"is_active": True})
        if concept is None:
            raise GenerationServiceError(ErrorCode.CONCEPT_NOT_FOUND)

        return Brand.from_record(brand), Product.from_record(product), Concept.from_record(concept)

    async def _get_owned(self, variation_id: str, owner_id: str) -> GenerationVariation:
        record = await self.db.get("generated_ads", variation_id, {"user_id": owner_id})
        if record is None:
            raise GenerationServiceError(ErrorCode.GENERATION_NOT_FOUND)
        return GenerationVariation.from_record(record)

    async def _get_completed(self, variation_id: str, owner_id: str) -> GenerationVariation:
        variation = await self._get_owned(variation_id, owner_id)
        if variation.generation_status != GenerationStatus.COMPLETED:
            raise GenerationServiceError(ErrorCode.GENERATION_NOT_COMPLETED)
        return variation

    async def _create_single(
        self, original: GenerationVariation, notes: str, owner_id: str
    ) -> dict[str, Any]:
        try:
            record = await self.db.insert(
                "generated_ads",
                new_variation_record(
                    user_id=owner_id,
                    brand_id=original.brand_id,
                    product_id=original.product_id,
                    concept_id=original.concept_id,
                    batch_id=str(uuid.uuid4()),
                    variation_index=original.variation_index,
                    important_notes=notes,
                ),
            )
        except Exception as e:
            logger.error(f"Failed to create variation from {original.id}: {e}")
            raise GenerationServiceError(ErrorCode.CREATE_FAILED)
        return record

    async def _debit_or_rollback(
        self, owner_id: str, amount: int, variation_ids: list[str]
    ) -> CreditDebit:
        """Debit credits; on any failure delete the just-created records."""
        try:
            return await self.credits.debit(owner_id, amount)
        except InsufficientCreditsError as e:
            await self._delete_records(variation_ids)
            logger.info(f"Insufficient credits for user {owner_id}: {e}")
            raise GenerationServiceError(ErrorCode.INSUFFICIENT_CREDITS)
        except Exception as e:
            await self._delete_records(variation_ids)
            logger.error(f"Credit debit failed for user {owner_id}: {e}")
            raise GenerationServiceError(ErrorCode.SOMETHING_WENT_WRONG)

    async def _enqueue_or_rollback(
        self,
        specs: list[TaskSpec],
        debit: CreditDebit,
        variation_ids: list[str],
        transaction_type: CreditTransactionType,
        reference_id: str,
    ) -> None:
        """Queue tasks; if queueing fails, delete the records and refund."""
        try:
            await self.queue.add_bulk(specs)
        except Exception as e:
            logger.error(f"Failed to queue {len(specs)} task(s): {e}")
            await self._delete_records(variation_ids)
            try:
                if await self.credits.refund(debit):
                    await self.credits.record_transaction(
                        debit, CreditTransactionType.REFUND, reference_id, transaction_type.value, refund=True
                    )
            except Exception as refund_error:
                logger.error(f"Failed to refund {debit.amount} credit(s) to user {debit.user_id}: {refund_error}")
            raise GenerationServiceError(ErrorCode.SOMETHING_WENT_WRONG)

    async def _delete_records(self, variation_ids: list[str]) -> None:
        try:
            await self.db.delete("generated_ads", {"_id__in": variation_ids})
        except Exception as e:
            logger.error(f"Failed to roll back variation records {variation_ids}: {e}")

    async def _pregenerate_copies(
        self, brand: Brand, product: Product, concept: Concept, notes: str
    ) -> Optional[list[AdCopy]]:
        """Best-effort bulk copy call; None means every task generates its own."""
        try:
            copies, usage = await self.copy_generator.generate_variations(
                brand, product, concept, notes, self.variations_per_batch
            )
        except Exception as e:
            logger.warning(f"Bulk copy generation failed, tasks will generate their own: {e}")
            return None
        if len(copies) < self.variations_per_batch:
            logger.warning(
                f"Bulk copy generation returned {len(copies)} of {self.variations_per_batch} variations"
            )
            return None
        return copies

    @staticmethod
    def _single_response(record: dict[str, Any]) -> dict[str, Any]:
        return {
            "variation_id": record["_id"],
            "batch_id": record["batch_id"],
            "status": GenerationStatus.PENDING.value,
            "message": GENERATION_STARTED,
        }


def aggregate_batch_status(statuses: list[GenerationStatus]) -> GenerationStatus:
    """Batch-level status derived from its variations."""
    if not statuses or not all(status.is_terminal for status in statuses):
        return GenerationStatus.PROCESSING
    if GenerationStatus.COMPLETED in statuses:
        return GenerationStatus.COMPLETED
    if all(status == GenerationStatus.CANCELLED for status in statuses):
        return GenerationStatus.CANCELLED
    return GenerationStatus.FAILED
