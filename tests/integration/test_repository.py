"""
Integration tests for DocumentRepository with the in-memory store.

Tests cover:
- Create / read / update / upsert / delete
- Soft delete visibility
- Created-date maintenance and type immutability
- Partition scoping of queries
- Dynamic and JSON queries
- Batch streaming
- Bulk operations and stored-procedure updates
"""

import asyncio
import json
from http import HTTPStatus

import pytest

from sdk.docrepo_sdk.envelope import DocumentEntity
from sdk.docrepo_sdk.errors import (
    AggregateOperationError,
    ConflictError,
    ConsistencyError,
    NotFoundError,
    StoreError,
    TypeMismatchError,
    ValidationError,
)
from sdk.docrepo_sdk.repository import DocumentRepository
from sdk.docrepo_sdk.store.base import QuerySpec
from sdk.docrepo_sdk.store.memory import InMemoryDocumentStore
from tests.models import Provider, Specification


def providers(count: int, prefix: str = "p", region: str = "north") -> list:
    """Helper to build providers p0..pN."""
    return [Provider(id=f"{prefix}{i}", name=f"Provider {i}", region=region) for i in range(count)]


class TestCrud:
    """Tests for single-document operations."""

    @pytest.mark.asyncio
    async def test_create_then_read(self, repo):
        provider = Provider(id="p1", name="Acme")

        status = await repo.create(Provider, provider)
        envelope = await repo.read_document_by_id(Provider, "p1")

        assert status == HTTPStatus.CREATED
        assert envelope.content == provider
        assert envelope.deleted is False
        assert envelope.document_type == "Provider"
        assert await repo.read_by_id(Provider, "p1") == provider

    @pytest.mark.asyncio
    async def test_create_document_returns_envelope(self, repo):
        envelope = await repo.create_document(Provider, Provider(id="p1", name="Acme"))

        assert isinstance(envelope, DocumentEntity)
        assert envelope.created_at == envelope.updated_at

    @pytest.mark.asyncio
    async def test_create_conflict(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))

        with pytest.raises(ConflictError):
            await repo.create(Provider, Provider(id="p1", name="Other"))

    @pytest.mark.asyncio
    async def test_create_rejects_blank_id(self, repo):
        with pytest.raises(ValidationError):
            await repo.create(Provider, Provider(id="  ", name="Acme"))

    @pytest.mark.asyncio
    async def test_read_missing(self, repo):
        with pytest.raises(NotFoundError):
            await repo.read_by_id(Provider, "missing")

    @pytest.mark.asyncio
    async def test_read_other_type_not_found(self, repo):
        await repo.create(Specification, Specification(id="s1", title="2024"))

        with pytest.raises(NotFoundError):
            await repo.read_by_id(Provider, "s1")

    @pytest.mark.asyncio
    async def test_read_by_id_partitioned(self, partitioned_repo):
        await partitioned_repo.create(Provider, Provider(id="p1", name="Acme", region="south"), "south")

        provider = await partitioned_repo.read_by_id_partitioned(Provider, "p1", "south")

        assert provider.region == "south"
        with pytest.raises(NotFoundError):
            await partitioned_repo.read_by_id_partitioned(Provider, "p1", "north")
        with pytest.raises(ValidationError):
            await partitioned_repo.read_by_id_partitioned(Provider, "p1", "")

    @pytest.mark.asyncio
    async def test_update_replaces_content_and_keeps_created(self, repo):
        created = await repo.create_document(Provider, Provider(id="p1", name="Acme"))

        status = await repo.update(Provider, Provider(id="p1", name="Acme Ltd"))
        envelope = await repo.read_document_by_id(Provider, "p1")

        assert status == HTTPStatus.OK
        assert envelope.content.name == "Acme Ltd"
        assert envelope.created_at == created.created_at
        assert envelope.updated_at > created.updated_at

    @pytest.mark.asyncio
    async def test_update_missing(self, repo):
        with pytest.raises(NotFoundError):
            await repo.update(Provider, Provider(id="p1", name="Acme"))

    @pytest.mark.asyncio
    async def test_update_with_other_type_fails_and_leaves_document(self, repo, store):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        before = store.all_documents(repo.ref)

        with pytest.raises(TypeMismatchError) as exc_info:
            await repo.update(Specification, Specification(id="p1", title="2024"))

        assert exc_info.value.stored_type == "Provider"
        assert exc_info.value.requested_type == "Specification"
        assert store.all_documents(repo.ref) == before

    @pytest.mark.asyncio
    async def test_upsert_with_other_type_fails(self, repo, store):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        before = store.all_documents(repo.ref)

        with pytest.raises(TypeMismatchError):
            await repo.upsert(Specification, Specification(id="p1", title="2024"))

        assert store.all_documents(repo.ref) == before

    @pytest.mark.asyncio
    async def test_upsert_with_other_type_fails_without_created_date(self, repo, store):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        before = store.all_documents(repo.ref)

        with pytest.raises(TypeMismatchError):
            await repo.upsert(
                Specification,
                Specification(id="p1", title="2024"),
                maintain_created_date=False,
            )

        assert store.all_documents(repo.ref) == before
        assert [d["documentType"] for d in store.all_documents(repo.ref)] == ["Provider"]


class TestSoftDelete:
    """Tests for soft and hard deletes."""

    @pytest.mark.asyncio
    async def test_soft_deleted_hidden_from_queries(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.create(Provider, Provider(id="p2", name="Beta"))

        status = await repo.delete(Provider, "p1")
        remaining = await (await repo.query(Provider)).to_list()

        assert status == HTTPStatus.OK
        assert [p.id for p in remaining] == ["p2"]
        assert await repo.find_document(Provider, "p1") is None

    @pytest.mark.asyncio
    async def test_soft_deleted_still_readable_by_id(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        envelope = await repo.read_document_by_id(Provider, "p1")

        assert envelope.deleted is True
        with pytest.raises(NotFoundError):
            await repo.read_document_by_id(Provider, "p1", include_deleted=False)

    @pytest.mark.asyncio
    async def test_soft_deleted_in_get_all_documents(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.create(Provider, Provider(id="p2", name="Beta"))
        await repo.delete(Provider, "p1")

        documents = await repo.get_all_documents(Provider)

        assert {(d.id, d.deleted) for d in documents} == {("p1", True), ("p2", False)}

    @pytest.mark.asyncio
    async def test_hard_delete_removes(self, repo, store):
        await repo.create(Provider, Provider(id="p1", name="Acme"))

        status = await repo.delete(Provider, "p1", hard_delete=True)

        assert status == HTTPStatus.NO_CONTENT
        assert store.all_documents(repo.ref) == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, repo):
        with pytest.raises(NotFoundError):
            await repo.delete(Provider, "missing")

    @pytest.mark.asyncio
    async def test_delete_in_partition(self, partitioned_repo, store):
        await partitioned_repo.create(Provider, Provider(id="p1", name="Acme", region="south"))
        await partitioned_repo.create(Provider, Provider(id="p2", name="Beta", region="north"))

        await partitioned_repo.delete(Provider, "p1", partition_key="south", hard_delete=True)

        assert store.partitions(partitioned_repo.ref) == {"north": 1}

    @pytest.mark.asyncio
    async def test_delete_derives_partition_from_document(self, partitioned_repo, store):
        await partitioned_repo.create(Provider, Provider(id="p1", name="Acme", region="south"))

        await partitioned_repo.delete(Provider, "p1", enable_cross_partition_query=True)

        assert store.all_documents(partitioned_repo.ref)[0]["deleted"] is True

    @pytest.mark.asyncio
    async def test_update_can_undelete(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        await repo.update(Provider, Provider(id="p1", name="Acme"), undelete=True)

        assert (await repo.read_document_by_id(Provider, "p1")).deleted is False

    @pytest.mark.asyncio
    async def test_update_keeps_deleted_flag_by_default(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        await repo.update(Provider, Provider(id="p1", name="Renamed"))

        assert (await repo.read_document_by_id(Provider, "p1")).deleted is True


class TestUpsert:
    """Tests for upsert and created-date maintenance."""

    @pytest.mark.asyncio
    async def test_new_document_created_equals_updated(self, repo):
        status = await repo.upsert(Provider, Provider(id="p1", name="Acme"))
        envelope = await repo.read_document_by_id(Provider, "p1")

        assert status == HTTPStatus.CREATED
        assert envelope.created_at == envelope.updated_at

    @pytest.mark.asyncio
    async def test_existing_document_keeps_created(self, repo):
        await repo.upsert(Provider, Provider(id="p1", name="Acme"))
        first = await repo.read_document_by_id(Provider, "p1")

        status = await repo.upsert(Provider, Provider(id="p1", name="Acme Ltd"))
        second = await repo.read_document_by_id(Provider, "p1")

        assert status == HTTPStatus.OK
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert second.content.name == "Acme Ltd"

    @pytest.mark.asyncio
    async def test_without_maintain_created_date(self, repo):
        await repo.upsert(Provider, Provider(id="p1", name="Acme"))
        first = await repo.read_document_by_id(Provider, "p1")
        await asyncio.sleep(0.001)

        await repo.upsert(Provider, Provider(id="p1", name="Acme"), maintain_created_date=False)
        second = await repo.read_document_by_id(Provider, "p1")

        assert second.created_at > first.created_at

    @pytest.mark.asyncio
    async def test_upsert_keeps_deleted_unless_undelete(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        await repo.upsert(Provider, Provider(id="p1", name="Acme"))
        assert (await repo.read_document_by_id(Provider, "p1")).deleted is True

        await repo.upsert(Provider, Provider(id="p1", name="Acme"), undelete=True)
        assert (await repo.read_document_by_id(Provider, "p1")).deleted is False

    @pytest.mark.asyncio
    async def test_undelete_keeps_created_by_default(self, repo):
        created = await repo.create_document(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        await repo.upsert(Provider, Provider(id="p1", name="Acme"), undelete=True)

        assert (await repo.read_document_by_id(Provider, "p1")).created_at == created.created_at

    @pytest.mark.asyncio
    async def test_undelete_can_reset_created(self, repo):
        created = await repo.create_document(Provider, Provider(id="p1", name="Acme"))
        await repo.delete(Provider, "p1")

        await repo.upsert(
            Provider,
            Provider(id="p1", name="Acme"),
            undelete=True,
            reset_created_date_on_undelete=True,
        )
        envelope = await repo.read_document_by_id(Provider, "p1")

        assert envelope.created_at > created.created_at
        assert envelope.created_at == envelope.updated_at

    @pytest.mark.asyncio
    async def test_duplicate_ids_across_partitions_inconsistent(self, partitioned_repo):
        await partitioned_repo.create(Provider, Provider(id="dup", name="A", region="north"))
        await partitioned_repo.create(Provider, Provider(id="dup", name="B", region="south"))

        with pytest.raises(ConsistencyError) as exc_info:
            await partitioned_repo.upsert(
                Provider,
                Provider(id="dup", name="C", region="north"),
                enable_cross_partition_query=True,
            )

        assert exc_info.value.found == 2

    @pytest.mark.asyncio
    async def test_partition_key_scopes_lookup(self, partitioned_repo):
        await partitioned_repo.create(Provider, Provider(id="dup", name="A", region="north"))
        await partitioned_repo.create(Provider, Provider(id="dup", name="B", region="south"))

        status = await partitioned_repo.upsert(
            Provider, Provider(id="dup", name="C", region="south"), partition_key="south"
        )

        assert status == HTTPStatus.OK
        provider = await partitioned_repo.read_by_id_partitioned(Provider, "dup", "south")
        assert provider.name == "C"


class TestQueries:
    """Tests for typed and dynamic queries."""

    @pytest.mark.asyncio
    async def test_read_is_lazy_envelope_query(self, repo, store):
        for provider in providers(5):
            await repo.create(Provider, provider)
        fetched = store.stats["page_fetch"]

        query = await repo.read(Provider, items_per_page=2)
        assert store.stats["page_fetch"] == fetched

        pages = [page async for page in query]
        assert [len(p) for p in pages] == [2, 2, 1]
        assert all(isinstance(e, DocumentEntity) for p in pages for e in p)
        assert await query.to_list() == []

    @pytest.mark.asyncio
    async def test_query_excludes_other_types(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.create(Specification, Specification(id="s1", title="2024"))

        result = await (await repo.query(Provider)).to_list()

        assert result == [Provider(id="p1", name="Acme")]

    @pytest.mark.asyncio
    async def test_query_sql_with_parameters(self, repo):
        for provider in providers(3):
            await repo.create(Provider, provider)

        result = await repo.query_sql(
            Provider,
            QuerySpec(
                "SELECT * FROM c WHERE c.content.name = @name",
                ({"name": "@name", "value": "Provider 1"},),
            ),
        )

        assert [p.id for p in result] == ["p1"]

    @pytest.mark.asyncio
    async def test_query_with_custom_sql(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))

        query = await repo.query(Provider, "SELECT * FROM c WHERE c.id = 'p1'")

        assert await query.to_list() == [Provider(id="p1", name="Acme")]

    @pytest.mark.asyncio
    async def test_find_document(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))

        found = await repo.find_document(Provider, "p1")

        assert found.content.name == "Acme"
        assert await repo.find_document(Provider, "missing") is None
        assert await repo.find_document(Specification, "p1") is None

    @pytest.mark.asyncio
    async def test_find_document_point_read(self, partitioned_repo):
        await partitioned_repo.create(Provider, Provider(id="p1", name="Acme", region="south"))

        found = await partitioned_repo.find_document(Provider, "p1", partition_key="south")

        assert found.id == "p1"
        with pytest.raises(NotFoundError):
            await partitioned_repo.find_document(Provider, "p1", partition_key="north")

    @pytest.mark.asyncio
    async def test_query_dynamic_returns_json_values(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.create(Provider, Provider(id="p2", name="Beta"))

        rows = await repo.query_dynamic("SELECT c.id, c.content.name FROM c")
        names = await repo.query_dynamic("SELECT VALUE c.content.name FROM c WHERE c.id = 'p2'")

        assert rows == [{"id": "p1", "name": "Acme"}, {"id": "p2", "name": "Beta"}]
        assert names == ["Beta"]

    @pytest.mark.asyncio
    async def test_query_dynamic_rejects_empty_sql(self, repo):
        with pytest.raises(ValidationError):
            await repo.query_dynamic("  ")

    @pytest.mark.asyncio
    async def test_malformed_sql_surfaces_store_error(self, repo):
        with pytest.raises(StoreError):
            await repo.query_dynamic("SELECT * FROM c ORDER BY c.id")

    @pytest.mark.asyncio
    async def test_query_documents_is_unfiltered(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.create(Provider, Provider(id="p2", name="Beta"))
        await repo.delete(Provider, "p2")

        documents = await (await repo.query_documents(Provider)).to_list()

        assert [d.id for d in documents] == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_query_as_json(self, repo):
        await repo.create(Provider, Provider(id="p1", name="Acme"))

        rows = [row async for row in repo.query_as_json()]

        assert [json.loads(r) for r in rows] == [{"id": "p1", "name": "Acme", "region": "north"}]


class TestPartitionScoping:
    """Queries without partition context only see the current partition."""

    @pytest.mark.asyncio
    async def test_without_cross_partition_flag(self, partitioned_repo):
        for region in ("north", "south", "east"):
            for provider in providers(3, prefix=region[0], region=region):
                await partitioned_repo.create(Provider, provider, region)

        scoped = await (await partitioned_repo.query(Provider)).to_list()
        everything = await (
            await partitioned_repo.query(Provider, enable_cross_partition_query=True)
        ).to_list()

        assert {p.region for p in scoped} == {"north"}
        assert len(scoped) == 3
        assert len(everything) == 9

    @pytest.mark.asyncio
    async def test_partitioned_queries(self, partitioned_repo):
        for region in ("north", "south"):
            for provider in providers(2, prefix=region[0], region=region):
                await partitioned_repo.create(Provider, provider, region)

        typed = await partitioned_repo.query_partitioned_entity(
            Provider, "SELECT * FROM c", partition_key="south"
        )
        dynamic = await partitioned_repo.dynamic_query_partitioned(
            "SELECT VALUE c.id FROM c", partition_key="south"
        )

        assert [p.id for p in typed] == ["s0", "s1"]
        assert dynamic == ["s0", "s1"]

    @pytest.mark.asyncio
    async def test_get_all_documents_crosses_partitions(self, partitioned_repo):
        for region in ("north", "south"):
            await partitioned_repo.create(Provider, Provider(id=region, name=region, region=region))

        assert len(await partitioned_repo.get_all_documents(Provider)) == 2
        assert len(await partitioned_repo.get_all_documents(Provider, enable_cross_partition_query=False)) == 1


class TestBatchProcessing:
    """Tests for documents_batch_processing."""

    @pytest.mark.asyncio
    async def test_batches_of_page_size(self, repo):
        for provider in providers(7):
            await repo.create(Provider, provider)
        batches = []

        async def handler(batch):
            batches.append([p.id for p in batch])

        total = await repo.documents_batch_processing(Provider, handler, items_per_page=3)

        assert total == 7
        assert batches == [["p0", "p1", "p2"], ["p3", "p4", "p5"], ["p6"]]

    @pytest.mark.asyncio
    async def test_batches_of_envelopes(self, repo):
        for provider in providers(2):
            await repo.create(Provider, provider)
        seen = []

        async def handler(batch):
            seen.extend(batch)

        await repo.documents_batch_processing(Provider, handler, as_documents=True)

        assert all(isinstance(d, DocumentEntity) for d in seen)


class TestBulk:
    """Tests for bulk operations."""

    @pytest.mark.asyncio
    async def test_bulk_create(self, repo, store):
        result = await repo.bulk_create(Provider, providers(6), degree_of_parallelism=2)

        assert result.total == 6
        assert result.ok
        assert len(store.all_documents(repo.ref)) == 6

    @pytest.mark.asyncio
    async def test_bulk_create_reports_conflicts(self, repo):
        await repo.create(Provider, Provider(id="p2", name="existing"))

        with pytest.raises(AggregateOperationError) as exc_info:
            await repo.bulk_create(Provider, providers(4))

        assert exc_info.value.failed_ids == ["p2"]
        assert isinstance(exc_info.value.exceptions[0], ConflictError)
        assert len(exc_info.value.result.succeeded) == 3

    @pytest.mark.asyncio
    async def test_bulk_upsert_with_failures(self, settings):
        store = InMemoryDocumentStore(latency=0.005)
        repo = DocumentRepository(settings, store=store)
        store.inject_failure("upsert_item", StoreError("throttled", status_code=429), item_id="p3")
        store.inject_failure("upsert_item", StoreError("throttled", status_code=429), item_id="p7")

        with pytest.raises(AggregateOperationError) as exc_info:
            await repo.bulk_upsert(Provider, providers(10), degree_of_parallelism=3)

        result = exc_info.value.result
        assert sorted(exc_info.value.failed_ids) == ["p3", "p7"]
        assert len(result.succeeded) == 8
        assert result.total == 10
        assert result.peak_in_flight <= 3
        assert store.peak_in_flight <= 3
        assert len(store.all_documents(repo.ref)) == 8

    @pytest.mark.asyncio
    async def test_bulk_upsert_maintains_created_date(self, repo):
        await repo.bulk_upsert(Provider, providers(3))
        before = {d.id: d for d in await repo.get_all_documents(Provider)}

        await repo.bulk_upsert(Provider, providers(3), maintain_created_date=True)
        after = {d.id: d for d in await repo.get_all_documents(Provider)}

        for document_id, envelope in after.items():
            assert envelope.created_at == before[document_id].created_at
            assert envelope.updated_at > before[document_id].updated_at

    @pytest.mark.asyncio
    async def test_bulk_upsert_partitioned(self, partitioned_repo, store):
        pairs = [(p.region, p) for p in providers(2, region="south") + providers(2, prefix="n")]

        await partitioned_repo.bulk_upsert_partitioned(Provider, pairs)

        assert store.partitions(partitioned_repo.ref) == {"south": 2, "north": 2}

    @pytest.mark.asyncio
    async def test_bulk_create_partitioned(self, partitioned_repo, store):
        pairs = [("east", p) for p in providers(3, region="east")]

        result = await partitioned_repo.bulk_create_partitioned(Provider, pairs)

        assert result.total == 3
        assert store.partitions(partitioned_repo.ref) == {"east": 3}

    @pytest.mark.asyncio
    async def test_bulk_soft_delete(self, repo):
        items = providers(4)
        await repo.bulk_create(Provider, items)

        await repo.bulk_delete(Provider, items[:3])

        remaining = await (await repo.query(Provider)).to_list()
        assert [p.id for p in remaining] == ["p3"]

    @pytest.mark.asyncio
    async def test_bulk_hard_delete_derives_partitions(self, partitioned_repo, store):
        items = providers(2, region="south") + providers(2, prefix="n", region="north")
        await partitioned_repo.bulk_create_partitioned(Provider, [(p.region, p) for p in items])

        await partitioned_repo.bulk_delete(Provider, items, hard_delete=True)

        assert store.all_documents(partitioned_repo.ref) == []

    @pytest.mark.asyncio
    async def test_bulk_delete_partitioned_missing_items(self, partitioned_repo):
        await partitioned_repo.create(Provider, Provider(id="p0", name="x", region="south"))

        with pytest.raises(AggregateOperationError) as exc_info:
            await partitioned_repo.bulk_delete_partitioned(
                Provider,
                [("south", Provider(id="p0", name="x", region="south")),
                 ("south", Provider(id="p9", name="y", region="south"))],
            )

        assert exc_info.value.failed_ids == ["p9"]
        assert isinstance(exc_info.value.exceptions[0], NotFoundError)

    @pytest.mark.asyncio
    async def test_bulk_cancellation(self, repo):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(AggregateOperationError) as exc_info:
            await repo.bulk_create(Provider, providers(3), cancel_event=cancel)

        assert exc_info.value.result.cancelled
        assert len(exc_info.value.failures) == 3


class TestBulkUpdate:
    """Tests for stored-procedure bulk updates."""

    @staticmethod
    def replace_all(context, documents):
        for document in documents:
            context.replace(document)
        return len(documents)

    @pytest.mark.asyncio
    async def test_updates_through_procedure(self, repo, store):
        created = await repo.create_document(Provider, Provider(id="p1", name="Acme"))
        store.register_stored_procedure(repo.ref, "usp_bulk_update", self.replace_all)

        status = await repo.bulk_update(
            Provider,
            [Provider(id="p1", name="Acme Ltd"), Provider(id="p2", name="New")],
            "usp_bulk_update",
        )

        assert status == HTTPStatus.OK
        updated = await repo.read_document_by_id(Provider, "p1")
        assert updated.content.name == "Acme Ltd"
        assert updated.created_at == created.created_at
        assert updated.updated_at > created.updated_at
        assert (await repo.read_by_id(Provider, "p2")).name == "New"

    @pytest.mark.asyncio
    async def test_type_mismatch_fails_before_procedure(self, repo, store):
        await repo.create(Specification, Specification(id="s1", title="2024"))
        store.register_stored_procedure(repo.ref, "usp_bulk_update", self.replace_all)

        with pytest.raises(TypeMismatchError):
            await repo.bulk_update(Provider, [Provider(id="s1", name="x")], "usp_bulk_update")

        assert store.stats["execute_stored_procedure"] == 0

    @pytest.mark.asyncio
    async def test_unknown_procedure(self, repo):
        with pytest.raises(NotFoundError):
            await repo.bulk_update(Provider, [Provider(id="p1", name="x")], "usp_missing")


class TestLifecycle:
    """Tests for health, provisioning and throughput through the repository."""

    @pytest.mark.asyncio
    async def test_every_call_provisions_once(self, repo, store):
        await repo.create(Provider, Provider(id="p1", name="Acme"))
        await repo.read_by_id(Provider, "p1")
        await repo.query_dynamic("SELECT * FROM c")

        assert store.stats["create_collection"] == 1

    @pytest.mark.asyncio
    async def test_throughput(self, repo):
        await repo.set_throughput(800)

        assert await repo.get_throughput() == 800

    @pytest.mark.asyncio
    async def test_health(self, repo, store):
        assert await repo.is_health_ok() == (True, "")

        store.inject_failure("probe", StoreError("service unavailable", status_code=503))

        assert await repo.is_health_ok() == (False, "service unavailable")

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, repo, store):
        async with repo:
            await repo.ensure_collection_exists()
            assert store.is_connected

        assert not store.is_connected
