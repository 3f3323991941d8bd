import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, select
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from awesome_index.domain.exceptions import StorageException
from awesome_index.domain.models import (
    DocumentItem,
    EntityFound,
    EntityId,
    EntityItem,
    EntityRecord,
    ListDocument,
    StoreItem,
    entity_record_adapter,
    should_replace_document,
    should_replace_entity,
)

logger = logging.getLogger(__name__)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
Payload = JSON().with_variant(JSONB(), "postgresql")

# SQLAlchemy core Table definitions
metadata = MetaData()
entities_table = Table(
    'entity_records', metadata,
    Column('source', String, primary_key=True),
    Column('owner', String, primary_key=True),
    Column('name', String, primary_key=True),
    Column('kind', String, nullable=False),
    Column('stars', Integer, nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('payload', Payload, nullable=False),
)
documents_table = Table(
    'list_documents', metadata,
    Column('source', String, primary_key=True),
    Column('owner', String, primary_key=True),
    Column('name', String, primary_key=True),
    Column('stars', Integer, nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('payload', Payload, nullable=False),
)


def _key(table: Table, entity_id: EntityId):
    return (
        (table.c.source == entity_id.source.value)
        & (table.c.owner == entity_id.owner)
        & (table.c.name == entity_id.name)
    )


class SqlStore:
    """
    Persistent store for entity records and list documents.
    Each record is kept whole as a JSON payload; records are only ever replaced, never patched.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def init_schema(self) -> None:
        async with self._connect() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def get_entity(self, entity_id: EntityId) -> Optional[EntityRecord]:
        async with self._connect() as conn:
            return await self._get_entity(conn, entity_id)

    async def put_entity(self, record: EntityRecord) -> None:
        async with self._connect() as conn:
            await self._put_entity(conn, record)

    async def list_entities(self) -> List[EntityRecord]:
        async with self._connect() as conn:
            result = await conn.execute(
                select(entities_table.c.payload).order_by(
                    entities_table.c.source, entities_table.c.owner, entities_table.c.name
                )
            )
            rows = result.fetchall()

        records = []
        for (payload,) in rows:
            try:
                records.append(entity_record_adapter.validate_python(payload))
            except ValidationError as e:
                logger.error(f"Skipping unreadable entity record: {e}")
        return records

    async def get_document(self, entity_id: EntityId) -> Optional[ListDocument]:
        async with self._connect() as conn:
            return await self._get_document(conn, entity_id)

    async def put_document(self, document: ListDocument) -> None:
        async with self._connect() as conn:
            await self._put_document(conn, document)

    async def list_documents(self) -> List[ListDocument]:
        async with self._connect() as conn:
            result = await conn.execute(
                select(documents_table.c.payload).order_by(
                    documents_table.c.source, documents_table.c.owner, documents_table.c.name
                )
            )
            rows = result.fetchall()

        documents = []
        for (payload,) in rows:
            try:
                documents.append(ListDocument.model_validate(payload))
            except ValidationError as e:
                logger.error(f"Skipping unreadable list document: {e}")
        return documents

    async def export(self) -> List[StoreItem]:
        """Dumps every record, entities first, for backup or migration."""
        items: List[StoreItem] = [EntityItem(record=record) for record in await self.list_entities()]
        items.extend(DocumentItem(document=document) for document in await self.list_documents())
        return items

    async def import_items(self, items: Iterable[StoreItem]) -> int:
        """
        Merges exported records into the store.

        Entity records follow the found-beats-not-found rule, otherwise the newer
        snapshot wins; documents are replaced only by newer ones.

        Returns:
            int: Number of records written.
        """
        written = 0
        async with self._connect() as conn:
            for item in items:
                if isinstance(item, EntityItem):
                    existing = await self._get_entity(conn, item.record.id)
                    if should_replace_entity(existing, item.record):
                        await self._put_entity(conn, item.record)
                        written += 1
                elif isinstance(item, DocumentItem):
                    existing_document = await self._get_document(conn, item.document.id)
                    if should_replace_document(existing_document, item.document):
                        await self._put_document(conn, item.document)
                        written += 1
                else:
                    raise TypeError(f"Unknown store item: {item!r}")

        logger.info(f"Imported {written} records.")
        return written

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StorageException(f"Database operation failed: {e}") from e

    def _insert(self, table: Table):
        if self.engine.dialect.name == "sqlite":
            return sqlite_insert(table)
        return pg_insert(table)

    async def _get_entity(self, conn: AsyncConnection, entity_id: EntityId) -> Optional[EntityRecord]:
        result = await conn.execute(select(entities_table.c.payload).where(_key(entities_table, entity_id)))
        payload = result.scalar_one_or_none()
        if payload is None:
            return None
        try:
            return entity_record_adapter.validate_python(payload)
        except ValidationError as e:
            raise StorageException(f"Unreadable entity record for {entity_id}: {e}") from e

    async def _put_entity(self, conn: AsyncConnection, record: EntityRecord) -> None:
        entity_id = record.id
        stmt = self._insert(entities_table).values(
            source=entity_id.source.value,
            owner=entity_id.owner,
            name=entity_id.name,
            kind=record.kind,
            stars=record.metadata.stars if isinstance(record, EntityFound) else None,
            updated_at=record.updated_at,
            payload=record.model_dump(mode="json"),
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['source', 'owner', 'name'],
            set_={
                'kind': stmt.excluded.kind,
                'stars': stmt.excluded.stars,
                'updated_at': stmt.excluded.updated_at,
                'payload': stmt.excluded.payload,
            },
        )
        await conn.execute(upsert_stmt)

    async def _get_document(self, conn: AsyncConnection, entity_id: EntityId) -> Optional[ListDocument]:
        result = await conn.execute(select(documents_table.c.payload).where(_key(documents_table, entity_id)))
        payload = result.scalar_one_or_none()
        if payload is None:
            return None
        try:
            return ListDocument.model_validate(payload)
        except ValidationError as e:
            raise StorageException(f"Unreadable list document for {entity_id}: {e}") from e

    async def _put_document(self, conn: AsyncConnection, document: ListDocument) -> None:
        entity_id = document.id
        stmt = self._insert(documents_table).values(
            source=entity_id.source.value,
            owner=entity_id.owner,
            name=entity_id.name,
            stars=document.metadata.stars,
            updated_at=document.updated_at,
            payload=document.model_dump(mode="json"),
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['source', 'owner', 'name'],
            set_={
                'stars': stmt.excluded.stars,
                'updated_at': stmt.excluded.updated_at,
                'payload': stmt.excluded.payload,
            },
        )
        await conn.execute(upsert_stmt)
