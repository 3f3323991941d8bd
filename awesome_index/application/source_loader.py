import logging
from datetime import datetime
from typing import Callable

from awesome_index.domain.exceptions import DocumentNotFoundException, NotAnAwesomeListException
from awesome_index.domain.models import EntityFound, EntityId, EntityNotFound, EntityRecord, ListDocument, utcnow
from awesome_index.infrastructure.github_client import GitHubClient
from awesome_index.infrastructure.markdown import extract_links

logger = logging.getLogger(__name__)


class SourceLoader:
    """
    Builds complete domain records from the remote source: entity records
    (found or not found) and list documents with their extracted links.
    """

    def __init__(self, gateway: GitHubClient, clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.clock = clock

    async def load_entity(self, entity_id: EntityId) -> EntityRecord:
        logger.debug(f"Loading metadata for {entity_id} from source.")
        metadata = await self.gateway.fetch_entity_metadata(entity_id)
        if metadata is None:
            return EntityNotFound(id=entity_id, updated_at=self.clock())
        return EntityFound(metadata=metadata)

    async def load_document(self, entity_id: EntityId) -> ListDocument:
        """
        Fetches a list document's markdown and metadata and extracts its links.

        Raises:
            DocumentNotFoundException: If the repository holding the document does not exist.
            NotAnAwesomeListException: If the document links to no repository besides itself.
        """
        logger.debug(f"Loading document {entity_id} from source.")
        content = await self.gateway.fetch_document_content(entity_id)
        metadata = await self.gateway.fetch_entity_metadata(entity_id)
        if metadata is None:
            raise DocumentNotFoundException(f"Repository {entity_id} not found.")

        links = [link for link in extract_links(content) if link.target != entity_id]
        if not links:
            raise NotAnAwesomeListException(f"{entity_id} does not appear to be an awesome list.")

        logger.info(f"Loaded document {entity_id} with {len(links)} links.")
        return ListDocument(
            metadata=metadata,
            raw_content=content,
            links=links,
            updated_at=self.clock(),
        )
