from datetime import datetime
from typing import Any, Dict, Optional

from awesome_index.domain.models import EntityId, EntityMetadata


def parse_github_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub GraphQL repository nodes into EntityMetadata instances.
    """

    @staticmethod
    def to_domain(entity_id: EntityId, raw_node: Dict[str, Any], fetched_at: datetime) -> EntityMetadata:
        """
        Transforms a raw GitHub GraphQL ``repository`` node into EntityMetadata.

        Args:
            entity_id (EntityId): The id that was queried; the snapshot is keyed by it rather than by
                the canonical owner/name GitHub may redirect to.
            raw_node (Dict[str, Any]): The ``repository`` object from the GraphQL response.
            fetched_at (datetime): Snapshot time recorded as ``updated_at``.

        Returns:
            EntityMetadata: The domain snapshot of the repository.
        """

        # Nested connections may be null on partial responses
        merged_nodes = (raw_node.get('latestMergedPullRequest') or {}).get('nodes') or []
        language_nodes = (raw_node.get('languages') or {}).get('nodes') or []
        primary_language = raw_node.get('primaryLanguage') or {}

        return EntityMetadata(
            id=entity_id,
            description=raw_node.get('description'),
            last_pushed_at=parse_github_datetime(raw_node.get('pushedAt')),
            last_pull_request_merged_at=parse_github_datetime(
                merged_nodes[0].get('mergedAt') if merged_nodes else None
            ),
            stars=raw_node.get('stargazerCount') or 0,
            forks=raw_node.get('forkCount') or 0,
            issues=(raw_node.get('issues') or {}).get('totalCount', 0),
            pull_requests=(raw_node.get('totalPullRequests') or {}).get('totalCount', 0),
            primary_language=primary_language.get('name'),
            languages=tuple(node['name'] for node in language_nodes if node and node.get('name')),
            updated_at=fetched_at,
        )
