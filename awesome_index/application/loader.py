import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from awesome_index.application.memory_cache import MemoryCache
from awesome_index.application.refresh_queue import RefreshQueue
from awesome_index.application.source_loader import SourceLoader
from awesome_index.domain.exceptions import (
    AwesomeIndexException,
    NotAnAwesomeListException,
    RateLimitExceededException,
)
from awesome_index.domain.models import (
    AggregateView,
    EntityFound,
    EntityId,
    EntityNotFound,
    EntityRecord,
    ListDocument,
    RefreshDocument,
    RefreshMetadata,
    RefreshTask,
    ResolvedLink,
    utcnow,
)
from awesome_index.infrastructure.database import SqlStore

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_TTL_SECONDS = 60
DEFAULT_DOCUMENT_REFRESH_TTL_SECONDS = 30 * 60


class Loader:
    """
    Bridges the persistent store and the remote source, caching assembled
    aggregate views in memory.

    Reads never wait for background work: missing or stale data is served as
    it is and turned into refresh tasks for the single background worker.
    """

    def __init__(
        self,
        store: SqlStore,
        source: SourceLoader,
        cache: Optional[MemoryCache] = None,
        queue: Optional[RefreshQueue] = None,
        memory_ttl_seconds: float = DEFAULT_MEMORY_TTL_SECONDS,
        document_refresh_ttl_seconds: float = DEFAULT_DOCUMENT_REFRESH_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.source = source
        self.clock = clock
        self.cache = cache if cache is not None else MemoryCache(clock=clock)
        self.queue = queue if queue is not None else RefreshQueue(clock=clock)
        self.memory_ttl_seconds = memory_ttl_seconds
        self.document_refresh_ttl_seconds = document_refresh_ttl_seconds
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> "Loader":
        """Launches the background refresh worker on the running event loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self.queue.run(self.run_task))
        return self

    async def join(self) -> None:
        """Waits for the background worker, which only ends when cancelled."""
        if self._worker is not None:
            await self._worker

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            logger.info("Refresh worker stopped.")
        self._worker = None

    async def run_task(self, task: RefreshTask) -> None:
        if isinstance(task, RefreshMetadata):
            await self.load_entity_from_source(task.id)
        elif isinstance(task, RefreshDocument):
            await self.load_document_from_source(task.id)
        else:
            raise TypeError(f"Unknown refresh task: {task!r}")

    async def load_entity_from_source(self, entity_id: EntityId) -> EntityRecord:
        record = await self.source.load_entity(entity_id)
        await self.store.put_entity(record)
        return record

    async def load_entity(self, entity_id: EntityId) -> EntityRecord:
        record = await self.store.get_entity(entity_id)
        if record is not None:
            return record
        return await self.load_entity_from_source(entity_id)

    async def load_document_from_source(self, entity_id: EntityId) -> ListDocument:
        document = await self.source.load_document(entity_id)
        await self.store.put_document(document)
        return document

    async def load_document(self, entity_id: EntityId) -> ListDocument:
        document = await self.store.get_document(entity_id)
        if document is not None:
            return document
        return await self.load_document_from_source(entity_id)

    async def get_aggregate_view(self, entity_id: EntityId, allow_source_refresh: bool = True) -> AggregateView:
        """
        Returns the aggregate view of a list document.

        A fresh in-memory view is returned as is. Otherwise the view is rebuilt
        from the store, falling back to the source for anything missing when
        ``allow_source_refresh`` is set. Unresolved links and a stale document
        are queued for background refresh either way.

        Raises:
            AwesomeIndexException: If the document itself cannot be loaded.
        """
        entry = await self.cache.get(entity_id)
        if entry is None or not entry.is_fresh(self.clock(), self.memory_ttl_seconds):
            view = await self._build_view(entity_id, allow_source_refresh)
            entry = await self.cache.put(entity_id, view)

        view = entry.value

        unresolved = view.unresolved
        if unresolved:
            logger.debug(f"Scheduling refresh of {len(unresolved)} unresolved links of {entity_id}.")
            await self.queue.enqueue_many(RefreshMetadata(id=target) for target in unresolved)

        age = (self.clock() - view.document.updated_at).total_seconds()
        if age > self.document_refresh_ttl_seconds:
            await self.queue.enqueue(RefreshDocument(id=entity_id))

        return view

    async def _build_view(self, entity_id: EntityId, allow_source_refresh: bool) -> AggregateView:
        document = await self.load_document(entity_id)
        resolved: List[ResolvedLink] = []
        not_found: List[EntityId] = []

        for link in document.links:
            if link.target == entity_id:
                continue

            try:
                if allow_source_refresh:
                    record = await self.load_entity(link.target)
                else:
                    record = await self.store.get_entity(link.target)
                    if record is None:
                        continue
            except RateLimitExceededException as e:
                # Every further source call would fail the same way.
                logger.warning(f"Rate limit exceeded while resolving links of {entity_id}: {e}")
                break
            except AwesomeIndexException as e:
                logger.warning(f"Failed to load metadata for {link.target}: {e}")
                continue

            if isinstance(record, EntityFound):
                resolved.append(ResolvedLink(link=link, metadata=record.metadata))
            elif isinstance(record, EntityNotFound):
                not_found.append(link.target)
            else:
                raise TypeError(f"Unknown entity record: {record!r}")

        return AggregateView(document=document, resolved=resolved, not_found=not_found)

    async def list_popular(self, count: int) -> List[AggregateView]:
        """
        The ``count`` known list documents with the most stars, resolved from stored data only.
        """
        documents = await self.store.list_documents()
        documents.sort(key=lambda d: d.metadata.stars, reverse=True)

        views = []
        for document in documents[:max(count, 0)]:
            views.append(await self.get_aggregate_view(document.id, allow_source_refresh=False))

        # Cached views may carry newer metadata than the stored documents ranked above.
        views.sort(key=lambda v: v.document.metadata.stars, reverse=True)
        logger.debug(f"Popular lists loaded ({len(views)}).")
        return views

    async def search(self, query: str) -> AggregateView:
        """
        Resolves free-form user input (URL or ``owner/name``) into an aggregate view.

        Raises:
            InvalidEntityIdException: If the input does not name a repository.
            NotAnAwesomeListException: If the document contains no repository links.
        """
        entity_id = EntityId.parse_ident(query)
        view = await self.get_aggregate_view(entity_id, allow_source_refresh=True)
        if not view.document.links:
            raise NotAnAwesomeListException(f"No repositories found in {entity_id}; is this an awesome list?")
        return view
