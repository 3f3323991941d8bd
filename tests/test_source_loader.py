import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from awesome_index.application.source_loader import SourceLoader
from awesome_index.domain.exceptions import (
    DocumentNotFoundException,
    NotAnAwesomeListException,
    SourceException,
)
from awesome_index.domain.models import EntityFound, EntityId, EntityMetadata, EntityNotFound
from awesome_index.infrastructure.github_client import GitHubClient

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
LIST = EntityId.github("sindresorhus", "awesome")

README = """# Awesome

[![Awesome](https://github.com/sindresorhus/awesome)](https://github.com/sindresorhus/awesome)

## Platforms

- [Node.js](https://github.com/sindresorhus/awesome-nodejs)
- [Python](https://github.com/vinta/awesome-python)
"""


class _FakeGateway:
    def __init__(self, content: str = README, metadata: dict = None) -> None:
        self.content = content
        self.metadata = metadata or {}

    async def fetch_document_content(self, entity_id):
        return self.content

    async def fetch_entity_metadata(self, entity_id):
        return self.metadata.get(entity_id)


def _metadata(entity_id: EntityId) -> EntityMetadata:
    return EntityMetadata(id=entity_id, stars=300_000, updated_at=NOW)


class TestSourceLoader(unittest.IsolatedAsyncioTestCase):
    async def test_load_entity_found(self) -> None:
        gateway = _FakeGateway(metadata={LIST: _metadata(LIST)})
        loader = SourceLoader(gateway, clock=lambda: NOW)

        record = await loader.load_entity(LIST)

        self.assertEqual(record, EntityFound(metadata=_metadata(LIST)))

    async def test_load_entity_missing_is_a_not_found_record(self) -> None:
        loader = SourceLoader(_FakeGateway(), clock=lambda: NOW)

        record = await loader.load_entity(LIST)

        self.assertEqual(record, EntityNotFound(id=LIST, updated_at=NOW))

    async def test_load_document_drops_self_links(self) -> None:
        loader = SourceLoader(_FakeGateway(metadata={LIST: _metadata(LIST)}), clock=lambda: NOW)

        document = await loader.load_document(LIST)

        self.assertEqual(
            [link.target.full_name for link in document.links],
            ["sindresorhus/awesome-nodejs", "vinta/awesome-python"],
        )
        self.assertEqual(document.links[0].section, ("Platforms",))
        self.assertEqual(document.raw_content, README)
        self.assertEqual(document.updated_at, NOW)
        self.assertEqual(document.metadata.stars, 300_000)

    async def test_document_without_links_is_not_an_awesome_list(self) -> None:
        gateway = _FakeGateway(
            content="# Hello\n\nSee [me](https://github.com/sindresorhus/awesome).\n",
            metadata={LIST: _metadata(LIST)},
        )
        loader = SourceLoader(gateway, clock=lambda: NOW)

        with self.assertRaises(NotAnAwesomeListException):
            await loader.load_document(LIST)

    async def test_document_of_missing_repository_raises(self) -> None:
        loader = SourceLoader(_FakeGateway(), clock=lambda: NOW)

        with self.assertRaises(DocumentNotFoundException):
            await loader.load_document(LIST)

    async def test_gateway_error_is_not_recorded_as_missing(self) -> None:
        body = {
            "data": {"repository": None},
            "errors": [{"type": "FORBIDDEN", "message": "Resource protected by organization SAML enforcement."}],
        }
        response = AsyncMock()
        response.status = 200
        response.headers = {}
        response.json = AsyncMock(return_value=body)
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.post = MagicMock(return_value=response)
        loader = SourceLoader(GitHubClient(session=session, clock=lambda: NOW), clock=lambda: NOW)

        with self.assertRaises(SourceException):
            await loader.load_entity(LIST)
