"""Unit tests for GenerationService (batch creation, fix/regenerate, cancel, queries)."""

import pytest
import pytest_asyncio

from conftest import BRAND_ID, CONCEPT_ID, OTHER_USER_ID, PRODUCT_ID, USER_ID, make_copy
from static_engine.models.generation import GenerationRequest, GenerationStatus, TaskType
from static_engine.services.generation_service import (
    ErrorCode,
    GenerationServiceError,
    aggregate_batch_status,
)

pytestmark = pytest.mark.unit


def _request(**overrides) -> GenerationRequest:
    values = {
        "brand_id": BRAND_ID,
        "product_id": PRODUCT_ID,
        "concept_id": CONCEPT_ID,
        "important_notes": "Mention the summer sale",
    }
    values.update(overrides)
    return GenerationRequest(**values)


async def _complete(db, variation_id: str, **values) -> None:
    copy = make_copy(0)
    await db.update(
        "generated_ads",
        {"_id": variation_id},
        {
            "generation_status": "completed",
            "copy_json": copy.to_dict(),
            "ad_copy_json": copy.ad_copy_view(),
            "image_url_1x1": f"https://cdn.test/{variation_id}/1x1.png",
            "image_url_9x16": f"https://cdn.test/{variation_id}/9x16.png",
            "image_url_16x9": None,
            "ad_name": "Glow Labs - Vitamin C Serum",
            **values,
        },
    )


async def _set_credits_used(db, used: int, user_id: str = USER_ID) -> None:
    await db.update("users", {"_id": user_id}, {"credits_used": used})


class TestCreateBatch:
    @pytest.mark.asyncio
    async def test_creates_six_pending_variations(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)

        records = await seeded_db.find(
            "generated_ads", {"batch_id": result["batch_id"]}, order_by="variation_index"
        )
        assert result["status"] == "pending"
        assert result["message"] == "Generation started successfully!"
        assert len(result["variation_ids"]) == 6
        assert [r["variation_index"] for r in records] == [0, 1, 2, 3, 4, 5]
        assert {r["_id"] for r in records} == set(result["variation_ids"])
        assert all(r["generation_status"] == "pending" for r in records)
        assert all(r["user_id"] == USER_ID for r in records)
        assert all(r["important_notes"] == "Mention the summer sale" for r in records)

    @pytest.mark.asyncio
    async def test_debits_five_credits_and_records_ledger(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)

        user = await seeded_db.get("users", USER_ID)
        ledger = await seeded_db.find("credit_transactions", {"user_id": USER_ID})
        assert user["credits_used"] == 5
        assert len(ledger) == 1
        assert ledger[0]["credits_amount"] == -5
        assert ledger[0]["reference_id"] == result["batch_id"]
        assert ledger[0]["reference_type"] == "generation_batch"

    @pytest.mark.asyncio
    async def test_queues_one_task_per_variation_with_pregenerated_copy(
        self, generation_service, queue, copy_generator
    ):
        result = await generation_service.create_batch(_request(), USER_ID)

        tasks = await queue.list_tasks()
        assert copy_generator.bulk_calls == 1
        assert [t.task_type for t in tasks] == [TaskType.CREATE.value] * 6
        assert [t.payload["variation_id"] for t in tasks] == result["variation_ids"]
        assert [t.payload["variation_index"] for t in tasks] == [0, 1, 2, 3, 4, 5]
        assert [t.payload["pregenerated_copy"]["headline"] for t in tasks] == [
            f"Headline {i}" for i in range(6)
        ]
        assert all(t.payload["batch_id"] == result["batch_id"] for t in tasks)

    @pytest.mark.asyncio
    async def test_bulk_copy_failure_still_queues_tasks(
        self, generation_service, queue, copy_generator
    ):
        copy_generator.fail_bulk = True

        result = await generation_service.create_batch(_request(), USER_ID)

        tasks = await queue.list_tasks()
        assert len(tasks) == 6
        assert all(t.payload["pregenerated_copy"] is None for t in tasks)
        assert result["status"] == "pending"

    @pytest.mark.asyncio
    async def test_brand_of_another_user_is_not_found(self, generation_service, seeded_db, queue):
        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), OTHER_USER_ID)

        assert exc_info.value.code == ErrorCode.BRAND_NOT_FOUND
        assert exc_info.value.is_not_found
        assert await seeded_db.count("generated_ads") == 0
        assert await queue.list_tasks() == []

    @pytest.mark.asyncio
    async def test_product_of_another_brand_is_not_found(self, generation_service, seeded_db):
        await seeded_db.insert("products", {"_id": "foreign", "brand_id": "other-brand", "name": "X"})

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(product_id="foreign"), USER_ID)

        assert exc_info.value.code == ErrorCode.PRODUCT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_concept_is_not_found(self, generation_service, seeded_db):
        await seeded_db.update("ad_concepts", {"_id": CONCEPT_ID}, {"is_active": False})

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        assert exc_info.value.code == ErrorCode.CONCEPT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_insufficient_credits_rolls_back_records(
        self, generation_service, seeded_db, queue, copy_generator
    ):
        await _set_credits_used(seeded_db, 16)  # 4 credits left

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        assert exc_info.value.code == ErrorCode.INSUFFICIENT_CREDITS
        assert exc_info.value.message == "Insufficient credits for this action!"
        assert await seeded_db.count("generated_ads") == 0
        assert await queue.list_tasks() == []
        assert copy_generator.bulk_calls == 0
        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 16

    @pytest.mark.asyncio
    async def test_queue_failure_deletes_records_and_refunds(
        self, generation_service, seeded_db, queue
    ):
        async def broken_add_bulk(specs):
            raise RuntimeError("queue unavailable")

        queue.add_bulk = broken_add_bulk

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        ledger = await seeded_db.find("credit_transactions", {"user_id": USER_ID})
        assert exc_info.value.code == ErrorCode.SOMETHING_WENT_WRONG
        assert await seeded_db.count("generated_ads") == 0
        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 0
        assert [entry["transaction_type"] for entry in ledger] == ["generation", "refund"]

    @pytest.mark.asyncio
    async def test_credit_write_failure_rolls_back_records(
        self, generation_service, seeded_db, queue
    ):
        update = seeded_db.update

        async def broken_user_update(table, filters, values):
            if table == "users":
                raise RuntimeError("database is locked")
            return await update(table, filters, values)

        seeded_db.update = broken_user_update

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        seeded_db.update = update
        assert exc_info.value.code == ErrorCode.SOMETHING_WENT_WRONG
        assert await seeded_db.count("generated_ads") == 0
        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 0
        assert await queue.list_tasks() == []

    @pytest.mark.asyncio
    async def test_refund_failure_still_reports_service_error(
        self, generation_service, seeded_db, queue
    ):
        async def broken_add_bulk(specs):
            raise RuntimeError("queue unavailable")

        async def broken_refund(debit):
            raise RuntimeError("database is locked")

        queue.add_bulk = broken_add_bulk
        generation_service.credits.refund = broken_refund

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        ledger = await seeded_db.find("credit_transactions", {"user_id": USER_ID})
        assert exc_info.value.code == ErrorCode.SOMETHING_WENT_WRONG
        assert await seeded_db.count("generated_ads") == 0
        assert [entry["transaction_type"] for entry in ledger] == ["generation"]

    @pytest.mark.asyncio
    async def test_record_insert_failure_is_create_failed(self, generation_service, seeded_db):
        async def broken_insert_many(table, rows):
            raise RuntimeError("disk full")

        seeded_db.insert_many = broken_insert_many

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.create_batch(_request(), USER_ID)

        assert exc_info.value.code == ErrorCode.CREATE_FAILED
        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 0


class TestFixAndRegenerate:
    @pytest_asyncio.fixture
    async def completed_id(self, generation_service, seeded_db, queue):
        result = await generation_service.create_batch(_request(), USER_ID)
        variation_id = result["variation_ids"][2]
        await _complete(seeded_db, variation_id)
        for task in await queue.list_tasks():
            await queue.complete(task)
        return variation_id

    @pytest.mark.asyncio
    async def test_fix_requires_completed_variation(self, generation_service):
        result = await generation_service.create_batch(_request(), USER_ID)

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.fix_errors(result["variation_ids"][0], "typo", USER_ID)

        assert exc_info.value.code == ErrorCode.GENERATION_NOT_COMPLETED
        assert exc_info.value.message == "Generation is not completed yet!"

    @pytest.mark.asyncio
    async def test_fix_creates_new_variation_and_fix_task(
        self, generation_service, seeded_db, queue, completed_id
    ):
        result = await generation_service.fix_errors(completed_id, "Headline is misspelled", USER_ID)

        new_record = await seeded_db.get("generated_ads", result["variation_id"])
        original = await seeded_db.get("generated_ads", completed_id)
        tasks = await queue.list_tasks()
        assert result["status"] == "pending"
        assert result["variation_id"] != completed_id
        assert new_record["important_notes"] == "[FIX] Headline is misspelled"
        assert new_record["variation_index"] == 2
        assert new_record["batch_id"] == result["batch_id"] != original["batch_id"]
        assert [t.task_type for t in tasks] == [TaskType.FIX.value]
        assert tasks[0].payload == {
            "user_id": USER_ID,
            "original_variation_id": completed_id,
            "variation_id": result["variation_id"],
            "error_description": "Headline is misspelled",
        }
        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 7

    @pytest.mark.asyncio
    async def test_fix_without_description_uses_general_fix(
        self, generation_service, seeded_db, completed_id
    ):
        result = await generation_service.fix_errors(completed_id, "", USER_ID)

        new_record = await seeded_db.get("generated_ads", result["variation_id"])
        assert new_record["important_notes"] == "[FIX] General fix"

    @pytest.mark.asyncio
    async def test_regenerate_keeps_inputs_and_index(
        self, generation_service, seeded_db, queue, completed_id
    ):
        result = await generation_service.regenerate_single(completed_id, USER_ID)

        new_record = await seeded_db.get("generated_ads", result["variation_id"])
        tasks = await queue.list_tasks()
        ledger = await seeded_db.find(
            "credit_transactions", {"transaction_type": "regenerate_single"}
        )
        assert new_record["important_notes"] == "Mention the summer sale"
        assert new_record["variation_index"] == 2
        assert tasks[0].task_type == TaskType.CREATE.value
        assert tasks[0].payload["variation_index"] == 2
        assert tasks[0].payload["pregenerated_copy"] is None
        assert ledger[0]["credits_amount"] == -2
        assert ledger[0]["reference_id"] == result["variation_id"]

    @pytest.mark.asyncio
    async def test_other_users_cannot_fix_or_regenerate(self, generation_service, completed_id):
        with pytest.raises(GenerationServiceError) as fix_error:
            await generation_service.fix_errors(completed_id, "x", OTHER_USER_ID)
        with pytest.raises(GenerationServiceError) as regen_error:
            await generation_service.regenerate_single(completed_id, OTHER_USER_ID)

        assert fix_error.value.code == ErrorCode.GENERATION_NOT_FOUND
        assert regen_error.value.code == ErrorCode.GENERATION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_regenerate_with_two_credits_left(
        self, generation_service, seeded_db, completed_id
    ):
        await _set_credits_used(seeded_db, 18)

        await generation_service.regenerate_single(completed_id, USER_ID)

        assert (await seeded_db.get("users", USER_ID))["credits_used"] == 20

    @pytest.mark.asyncio
    async def test_fix_with_one_credit_left_leaves_no_record(
        self, generation_service, seeded_db, completed_id
    ):
        await _set_credits_used(seeded_db, 19)
        before = await seeded_db.count("generated_ads")

        with pytest.raises(GenerationServiceError) as exc_info:
            await generation_service.fix_errors(completed_id, "x", USER_ID)

        assert exc_info.value.code == ErrorCode.INSUFFICIENT_CREDITS
        assert await seeded_db.count("generated_ads") == before


class TestCancelBatch:
    @pytest.mark.asyncio
    async def test_cancels_only_active_variations(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        await _complete(seeded_db, result["variation_ids"][0])
        await seeded_db.update(
            "generated_ads", {"_id": result["variation_ids"][1]}, {"generation_status": "processing"}
        )

        cancelled = await generation_service.cancel_batch(result["batch_id"], USER_ID)

        statuses = [
            (await seeded_db.get("generated_ads", vid))["generation_status"]
            for vid in result["variation_ids"]
        ]
        assert cancelled == {"batch_id": result["batch_id"], "cancelled_count": 5}
        assert statuses == ["completed"] + ["cancelled"] * 5

    @pytest.mark.asyncio
    async def test_second_cancel_counts_zero(self, generation_service):
        result = await generation_service.create_batch(_request(), USER_ID)
        await generation_service.cancel_batch(result["batch_id"], USER_ID)

        again = await generation_service.cancel_batch(result["batch_id"], USER_ID)

        assert again["cancelled_count"] == 0

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_batch_is_not_found(self, generation_service):
        result = await generation_service.create_batch(_request(), USER_ID)

        for batch_id, owner in (("missing", USER_ID), (result["batch_id"], OTHER_USER_ID)):
            with pytest.raises(GenerationServiceError) as exc_info:
                await generation_service.cancel_batch(batch_id, owner)
            assert exc_info.value.code == ErrorCode.GENERATION_NOT_FOUND


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_of_pending_variation(self, generation_service):
        result = await generation_service.create_batch(_request(), USER_ID)

        status = await generation_service.get_status(result["variation_ids"][3], USER_ID)

        assert status["generation_status"] == "pending"
        assert status["variation_index"] == 3
        assert status["image_url_1x1"] is None
        assert status["ad_copy_json"] is None

    @pytest.mark.asyncio
    async def test_results_require_completion(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        variation_id = result["variation_ids"][0]

        with pytest.raises(GenerationServiceError):
            await generation_service.get_results(variation_id, USER_ID)

        await _complete(seeded_db, variation_id)
        results = await generation_service.get_results(variation_id, USER_ID)

        assert results["generation_status"] == "completed"
        assert results["ad_copy_json"]["headline"] == "Headline 0"
        assert "image_prompt" not in results["ad_copy_json"]

    @pytest.mark.asyncio
    async def test_batch_status_counts(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        await _complete(seeded_db, result["variation_ids"][0])

        batch = await generation_service.get_batch_status(result["batch_id"], USER_ID)

        assert batch["status"] == "processing"
        assert batch["total"] == 6
        assert batch["counts"]["completed"] == 1
        assert batch["counts"]["pending"] == 5
        assert [v["variation_index"] for v in batch["variations"]] == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_export_lists_every_ratio(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        variation_id = result["variation_ids"][0]
        await _complete(seeded_db, variation_id)

        export = await generation_service.export_ratios(variation_id, USER_ID)

        assert [r["ratio"] for r in export["ratios"]] == ["1:1", "9:16", "16:9"]
        assert export["ratios"][2]["image_url"] is None

    @pytest.mark.asyncio
    async def test_recent_includes_brand_and_concept_names(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        await _complete(seeded_db, result["variation_ids"][0])

        recent = await generation_service.get_recent(USER_ID)

        assert len(recent) == 1
        assert recent[0]["brand_name"] == "Glow Labs"
        assert recent[0]["concept_name"] == "Testimonial Card"
        assert recent[0]["image_url"].endswith("/1x1.png")

    @pytest.mark.asyncio
    async def test_list_generations_paginates_completed_only(self, generation_service, seeded_db):
        result = await generation_service.create_batch(_request(), USER_ID)
        for variation_id in result["variation_ids"][:3]:
            await _complete(seeded_db, variation_id)

        page = await generation_service.list_generations(USER_ID, page=2, limit=2)
        searched = await generation_service.list_generations(USER_ID, search="Serum")
        other = await generation_service.list_generations(OTHER_USER_ID)

        assert page["total"] == 3
        assert len(page["list"]) == 1
        assert searched["total"] == 3
        assert other["total"] == 0


class TestAggregateBatchStatus:
    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([], "processing"),
            (["pending", "completed"], "processing"),
            (["completed", "failed", "cancelled"], "completed"),
            (["failed", "cancelled"], "failed"),
            (["cancelled", "cancelled"], "cancelled"),
        ],
    )
    def test_aggregation(self, statuses, expected):
        result = aggregate_batch_status([GenerationStatus(s) for s in statuses])

        assert result.value == expected
