import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from awesome_index.application.loader import Loader
from awesome_index.application.refresh_queue import RefreshQueue
from awesome_index.domain.exceptions import (
    DocumentNotFoundException,
    InvalidEntityIdException,
    RateLimitExceededException,
    SourceException,
    StorageException,
)
from awesome_index.domain.models import (
    EntityFound,
    EntityId,
    EntityMetadata,
    EntityNotFound,
    Link,
    ListDocument,
    RefreshDocument,
    RefreshMetadata,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
LIST = EntityId.github("lists", "awesome")
A, B, C, D = (EntityId.github("o", name) for name in "abcd")


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _metadata(entity_id: EntityId, stars: int = 1) -> EntityMetadata:
    return EntityMetadata(id=entity_id, stars=stars, updated_at=NOW)


def _document(entity_id: EntityId, targets, stars: int = 1, updated_at: datetime = NOW) -> ListDocument:
    return ListDocument(
        metadata=_metadata(entity_id, stars),
        raw_content="",
        links=[Link(target=target, section=("Section",)) for target in targets],
        updated_at=updated_at,
    )


class _FakeStore:
    def __init__(self) -> None:
        self.entities = {}
        self.documents = {}
        self.broken = set()
        self.document_reads = 0
        self.entity_reads = 0

    async def get_entity(self, entity_id):
        self.entity_reads += 1
        if entity_id in self.broken:
            raise StorageException("disk on fire")
        return self.entities.get(entity_id)

    async def put_entity(self, record) -> None:
        self.entities[record.id] = record

    async def get_document(self, entity_id):
        self.document_reads += 1
        return self.documents.get(entity_id)

    async def put_document(self, document) -> None:
        self.documents[document.id] = document

    async def list_documents(self):
        return list(self.documents.values())


class _FakeSource:
    def __init__(self) -> None:
        self.entities = {}
        self.documents = {}
        self.errors = {}
        self.rate_limited_from = None
        self.entity_calls = []
        self.document_calls = []

    async def load_entity(self, entity_id):
        self.entity_calls.append(entity_id)
        if self.rate_limited_from is not None and entity_id >= self.rate_limited_from:
            raise RateLimitExceededException(reset_at=NOW + timedelta(minutes=10))
        if entity_id in self.errors:
            raise self.errors[entity_id]
        metadata = self.entities.get(entity_id)
        if metadata is None:
            return EntityNotFound(id=entity_id, updated_at=NOW)
        return EntityFound(metadata=metadata)

    async def load_document(self, entity_id):
        self.document_calls.append(entity_id)
        if entity_id not in self.documents:
            raise DocumentNotFoundException(f"{entity_id} not found")
        return self.documents[entity_id]


class _LoaderTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = _Clock(NOW)
        self.store = _FakeStore()
        self.source = _FakeSource()
        self.queue = RefreshQueue(interval_seconds=0, clock=self.clock)
        self.loader = Loader(
            store=self.store,
            source=self.source,
            queue=self.queue,
            memory_ttl_seconds=60,
            document_refresh_ttl_seconds=30 * 60,
            clock=self.clock,
        )


class TestFallbackChain(_LoaderTestCase):
    async def test_total_miss_fetches_and_persists(self) -> None:
        self.source.documents[LIST] = _document(LIST, [A, B])
        self.source.entities[A] = _metadata(A)
        self.source.entities[B] = _metadata(B)

        view = await self.loader.get_aggregate_view(LIST, allow_source_refresh=True)

        self.assertEqual([r.link.target for r in view.resolved], [A, B])
        self.assertEqual(view.unresolved, [])
        self.assertIn(LIST, self.store.documents)
        self.assertEqual(set(self.store.entities), {A, B})
        self.assertEqual(await self.queue.pending(), [])

    async def test_store_hits_skip_the_source(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A])
        self.store.entities[A] = EntityFound(metadata=_metadata(A))

        view = await self.loader.get_aggregate_view(LIST)

        self.assertEqual(view.resolved[0].metadata, _metadata(A))
        self.assertEqual(self.source.document_calls, [])
        self.assertEqual(self.source.entity_calls, [])

    async def test_document_failure_is_raised(self) -> None:
        with self.assertRaises(DocumentNotFoundException):
            await self.loader.get_aggregate_view(LIST)

        self.assertIsNone(await self.loader.cache.get(LIST))

    async def test_self_links_are_skipped(self) -> None:
        self.store.documents[LIST] = _document(LIST, [LIST, A])
        self.source.entities[A] = _metadata(A)

        await self.loader.get_aggregate_view(LIST)

        self.assertEqual(self.source.entity_calls, [A])

    async def test_store_only_mode_never_calls_the_source(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A, B])
        self.store.entities[A] = EntityFound(metadata=_metadata(A))

        view = await self.loader.get_aggregate_view(LIST, allow_source_refresh=False)

        self.assertEqual([r.link.target for r in view.resolved], [A])
        self.assertEqual(view.unresolved, [B])
        self.assertEqual(self.source.entity_calls, [])
        self.assertEqual(await self.queue.pending(), [RefreshMetadata(id=B)])


class TestLinkResolution(_LoaderTestCase):
    async def test_not_found_links_are_not_unresolved(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A, B])
        self.source.entities[A] = _metadata(A)

        view = await self.loader.get_aggregate_view(LIST)

        self.assertEqual(view.not_found, (B,))
        self.assertEqual(view.unresolved, [])
        self.assertEqual(self.store.entities[B], EntityNotFound(id=B, updated_at=NOW))
        self.assertEqual(await self.queue.pending(), [])

    async def test_failed_link_stays_unresolved_and_resolution_continues(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A, B])
        self.source.errors[A] = SourceException("timeout")
        self.source.entities[B] = _metadata(B)

        view = await self.loader.get_aggregate_view(LIST)

        self.assertEqual([r.link.target for r in view.resolved], [B])
        self.assertEqual(view.unresolved, [A])
        self.assertEqual(await self.queue.pending(), [RefreshMetadata(id=A)])

    async def test_store_failure_for_a_link_leaves_it_unresolved(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A, B])
        self.store.broken.add(A)
        self.store.entities[B] = EntityFound(metadata=_metadata(B))

        view = await self.loader.get_aggregate_view(LIST, allow_source_refresh=False)

        self.assertEqual(view.unresolved, [A])

    async def test_rate_limit_stops_resolution_without_error(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A, B, C, D])
        self.store.entities[D] = EntityFound(metadata=_metadata(D))
        self.source.entities[A] = _metadata(A)
        self.source.rate_limited_from = B

        view = await self.loader.get_aggregate_view(LIST)

        # C is never attempted, and D is not read even though it is stored
        self.assertEqual(self.source.entity_calls, [A, B])
        self.assertEqual([r.link.target for r in view.resolved], [A])
        self.assertEqual(view.unresolved, [B, C, D])
        self.assertEqual(
            await self.queue.pending(),
            [RefreshMetadata(id=B), RefreshMetadata(id=C), RefreshMetadata(id=D)],
        )

    async def test_duplicate_links_are_enqueued_once(self) -> None:
        self.store.documents[LIST] = _document(LIST, [B, A, B, A])

        await self.loader.get_aggregate_view(LIST, allow_source_refresh=False)

        self.assertEqual(await self.queue.pending(), [RefreshMetadata(id=A), RefreshMetadata(id=B)])


class TestMemoryCache(_LoaderTestCase):
    async def test_fresh_view_is_served_from_memory(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A])
        self.store.entities[A] = EntityFound(metadata=_metadata(A))

        first = await self.loader.get_aggregate_view(LIST)
        self.clock.now = NOW + timedelta(seconds=59)
        second = await self.loader.get_aggregate_view(LIST)

        self.assertIs(first, second)
        self.assertEqual(self.store.document_reads, 1)

    async def test_expired_view_is_rebuilt(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A])
        self.store.entities[A] = EntityFound(metadata=_metadata(A))

        first = await self.loader.get_aggregate_view(LIST)
        self.store.entities[A] = EntityFound(metadata=_metadata(A, stars=99))
        self.clock.now = NOW + timedelta(seconds=61)
        second = await self.loader.get_aggregate_view(LIST)

        self.assertIsNot(first, second)
        self.assertEqual(self.store.document_reads, 2)
        self.assertEqual(second.resolved[0].metadata.stars, 99)
        self.assertEqual(first.resolved[0].metadata.stars, 1)

    async def test_cached_view_still_schedules_unresolved_links(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A])

        await self.loader.get_aggregate_view(LIST, allow_source_refresh=False)
        await self.queue.run_once(lambda task: asyncio.sleep(0))
        await self.loader.get_aggregate_view(LIST, allow_source_refresh=False)

        self.assertEqual(await self.queue.pending(), [RefreshMetadata(id=A)])


class TestDocumentStaleness(_LoaderTestCase):
    async def test_stale_document_is_scheduled_for_refresh(self) -> None:
        self.store.documents[LIST] = _document(LIST, [], updated_at=NOW - timedelta(minutes=31))

        await self.loader.get_aggregate_view(LIST)

        self.assertEqual(await self.queue.pending(), [RefreshDocument(id=LIST)])

    async def test_recent_document_is_not_refreshed(self) -> None:
        self.store.documents[LIST] = _document(LIST, [], updated_at=NOW - timedelta(minutes=29))

        await self.loader.get_aggregate_view(LIST)

        self.assertEqual(await self.queue.pending(), [])


class TestRefreshTasks(_LoaderTestCase):
    async def test_refresh_metadata_replaces_stored_record(self) -> None:
        self.store.entities[A] = EntityNotFound(id=A, updated_at=NOW - timedelta(days=1))
        self.source.entities[A] = _metadata(A, stars=5)

        await self.loader.run_task(RefreshMetadata(id=A))

        self.assertEqual(self.store.entities[A], EntityFound(metadata=_metadata(A, stars=5)))

    async def test_refresh_document_replaces_stored_document(self) -> None:
        self.store.documents[LIST] = _document(LIST, [A], updated_at=NOW - timedelta(days=1))
        fresh = _document(LIST, [A, B])
        self.source.documents[LIST] = fresh

        await self.loader.run_task(RefreshDocument(id=LIST))

        self.assertEqual(self.store.documents[LIST], fresh)

    async def test_unknown_task_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            await self.loader.run_task(object())

    async def test_worker_drains_queued_tasks(self) -> None:
        self.source.entities[A] = _metadata(A)
        self.loader.start()
        try:
            await self.queue.enqueue(RefreshMetadata(id=A))
            for _ in range(100):
                if A in self.store.entities:
                    break
                await asyncio.sleep(0.01)
        finally:
            await self.loader.stop()

        self.assertIn(A, self.store.entities)


class TestListPopular(_LoaderTestCase):
    async def test_top_documents_by_stars(self) -> None:
        for name, stars in [("small", 5), ("big", 50), ("mid", 20)]:
            entity_id = EntityId.github("lists", name)
            self.store.documents[entity_id] = _document(entity_id, [A], stars=stars)

        views = await self.loader.list_popular(2)

        self.assertEqual([v.document.id.name for v in views], ["big", "mid"])
        self.assertEqual(self.source.entity_calls, [])

    async def test_non_positive_count_returns_nothing(self) -> None:
        for name, stars in [("small", 5), ("big", 50)]:
            entity_id = EntityId.github("lists", name)
            self.store.documents[entity_id] = _document(entity_id, [A], stars=stars)

        self.assertEqual(await self.loader.list_popular(0), [])
        self.assertEqual(await self.loader.list_popular(-1), [])

    async def test_final_order_uses_resolved_views(self) -> None:
        big = EntityId.github("lists", "big")
        mid = EntityId.github("lists", "mid")
        self.store.documents[big] = _document(big, [], stars=50)
        self.store.documents[mid] = _document(mid, [], stars=20)
        # The cached view of "mid" still carries 20 stars after the store drops to 10
        cached_mid = await self.loader.get_aggregate_view(mid)
        self.store.documents[mid] = _document(mid, [], stars=10)
        self.store.documents[big] = _document(big, [], stars=15)

        views = await self.loader.list_popular(2)

        self.assertEqual([v.document.id for v in views], [mid, big])
        self.assertIs(views[0], cached_mid)


class TestSearch(_LoaderTestCase):
    async def test_search_by_url(self) -> None:
        self.source.documents[LIST] = _document(LIST, [A])
        self.source.entities[A] = _metadata(A)

        view = await self.loader.search("https://github.com/lists/awesome")

        self.assertEqual(view.document.id, LIST)

    async def test_search_rejects_invalid_input(self) -> None:
        with self.assertRaises(InvalidEntityIdException):
            await self.loader.search("not a repository")
