"""Unit tests for the SQLite document store."""

import asyncio

import pytest

from static_engine.db.database import Database, DatabaseError

pytestmark = pytest.mark.unit


class TestInsertAndGet:
    @pytest.mark.asyncio
    async def test_insert_generates_id_and_created_at(self, db: Database):
        record = await db.insert("brands", {"name": "Glow Labs", "user_id": "u1"})

        assert record["_id"]
        assert record["created_at"]
        assert record["name"] == "Glow Labs"

    @pytest.mark.asyncio
    async def test_get_with_filters(self, db: Database):
        await db.insert("brands", {"_id": "b1", "user_id": "u1", "name": "Glow"})

        assert (await db.get("brands", "b1"))["name"] == "Glow"
        assert await db.get("brands", "b1", {"user_id": "u1"}) is not None
        assert await db.get("brands", "b1", {"user_id": "u2"}) is None
        assert await db.get("brands", "missing") is None

    @pytest.mark.asyncio
    async def test_nested_values_round_trip(self, db: Database):
        await db.insert("generated_ads", {"_id": "a1", "copy_json": {"callout_texts": ["A", "B"]}})

        record = await db.get("generated_ads", "a1")

        assert record["copy_json"] == {"callout_texts": ["A", "B"]}

    @pytest.mark.asyncio
    async def test_insert_many_is_all_or_nothing(self, db: Database):
        await db.insert("brands", {"_id": "dup", "name": "existing"})

        with pytest.raises(Exception):
            await db.insert_many("brands", [{"_id": "new", "name": "a"}, {"_id": "dup", "name": "b"}])

        assert await db.get("brands", "new") is None

    @pytest.mark.asyncio
    async def test_unknown_table_is_rejected(self, db: Database):
        with pytest.raises(DatabaseError):
            await db.insert("nope", {"a": 1})


class TestFind:
    @pytest.mark.asyncio
    async def test_filter_operators(self, db: Database):
        await db.insert_many(
            "generated_ads",
            [
                {"_id": f"a{i}", "variation_index": i, "generation_status": status, "ad_name": name}
                for i, (status, name) in enumerate(
                    [
                        ("pending", "Glow - Serum"),
                        ("processing", "Glow - Cream"),
                        ("completed", "Other - Serum"),
                        ("failed", None),
                    ]
                )
            ],
        )

        active = await db.find("generated_ads", {"generation_status__in": ["pending", "processing"]})
        assert [r["_id"] for r in active] == ["a0", "a1"]

        assert await db.count("generated_ads", {"variation_index__gte": 2}) == 2
        assert await db.count("generated_ads", {"variation_index__lt": 1}) == 1
        assert await db.count("generated_ads", {"generation_status__ne": "failed"}) == 3
        assert await db.count("generated_ads", {"ad_name__like": "%Serum%"}) == 2
        assert await db.count("generated_ads", {"ad_name": None}) == 1
        assert await db.count("generated_ads", {"_id__in": []}) == 0

    @pytest.mark.asyncio
    async def test_order_limit_offset(self, db: Database):
        await db.insert_many("generated_ads", [{"_id": f"a{i}", "variation_index": i} for i in range(5)])

        page = await db.find(
            "generated_ads", order_by="variation_index", descending=True, limit=2, offset=1
        )

        assert [r["variation_index"] for r in page] == [3, 2]

    @pytest.mark.asyncio
    async def test_boolean_filter(self, db: Database):
        await db.insert("ad_concepts", {"_id": "c1", "is_active": True})
        await db.insert("ad_concepts", {"_id": "c2", "is_active": False})

        active = await db.find("ad_concepts", {"is_active": True})

        assert [r["_id"] for r in active] == ["c1"]

    @pytest.mark.asyncio
    async def test_invalid_field_name_is_rejected(self, db: Database):
        with pytest.raises(DatabaseError):
            await db.find("brands", {"name') OR 1=1 --": "x"})

    @pytest.mark.asyncio
    async def test_unsupported_operator_is_rejected(self, db: Database):
        with pytest.raises(DatabaseError):
            await db.find("brands", {"name__regex": "x"})


class TestUpdate:
    @pytest.mark.asyncio
    async def test_conditional_update_acts_as_compare_and_set(self, db: Database):
        await db.insert("generated_ads", {"_id": "a1", "generation_status": "pending"})

        first = await db.update(
            "generated_ads",
            {"_id": "a1", "generation_status": "pending"},
            {"generation_status": "processing"},
        )
        second = await db.update(
            "generated_ads",
            {"_id": "a1", "generation_status": "pending"},
            {"generation_status": "processing"},
        )

        assert (first, second) == (1, 0)
        assert (await db.get("generated_ads", "a1"))["generation_status"] == "processing"

    @pytest.mark.asyncio
    async def test_update_writes_nested_and_null_values(self, db: Database):
        await db.insert("generated_ads", {"_id": "a1", "error": "boom"})

        await db.update(
            "generated_ads", {"_id": "a1"}, {"error": None, "ad_copy_json": {"headline": "Hi"}}
        )

        record = await db.get("generated_ads", "a1")
        assert record["error"] is None
        assert record["ad_copy_json"] == {"headline": "Hi"}

    @pytest.mark.asyncio
    async def test_update_requires_filters(self, db: Database):
        with pytest.raises(DatabaseError):
            await db.update("generated_ads", {}, {"a": 1})

    @pytest.mark.asyncio
    async def test_native_columns_cannot_be_updated(self, db: Database):
        await db.insert("brands", {"_id": "b1"})

        with pytest.raises(DatabaseError):
            await db.update("brands", {"_id": "b1"}, {"_id": "b2"})


class TestDeleteAndIncrement:
    @pytest.mark.asyncio
    async def test_delete_returns_count(self, db: Database):
        await db.insert_many("generated_ads", [{"_id": "a1"}, {"_id": "a2"}, {"_id": "a3"}])

        deleted = await db.delete("generated_ads", {"_id__in": ["a1", "a2"]})

        assert deleted == 2
        assert await db.count("generated_ads") == 1

    @pytest.mark.asyncio
    async def test_increment_is_atomic_under_concurrency(self, db: Database):
        await db.insert("ad_concepts", {"_id": "c1", "usage_count": 0})

        await asyncio.gather(*(db.increment("ad_concepts", "c1", "usage_count") for _ in range(10)))

        assert (await db.get("ad_concepts", "c1"))["usage_count"] == 10

    @pytest.mark.asyncio
    async def test_increment_missing_field_starts_at_zero(self, db: Database):
        await db.insert("users", {"_id": "u1"})

        assert await db.increment("users", "u1", "credits_used", 5) == 5
        assert await db.increment("users", "u1", "credits_used", -2) == 3

    @pytest.mark.asyncio
    async def test_increment_missing_document_returns_none(self, db: Database):
        assert await db.increment("users", "missing", "credits_used") is None
