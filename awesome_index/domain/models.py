import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Generic, List, Literal, Optional, Tuple, TypeVar, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from awesome_index.domain.exceptions import InvalidEntityIdException

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Source(str, Enum):
    """Remote systems an entity can live on."""

    GITHUB = "github"

    @property
    def domain(self) -> str:
        if self is Source.GITHUB:
            return "github.com"
        raise ValueError(f"Unknown source: {self.value}")


GITHUB_HOSTS = {"github.com", "www.github.com"}


@functools.total_ordering
class EntityId(BaseModel):
    """
    Identifies a remote repository.
    Ordered by (source, owner, name); owner and name keep the case the remote system gave them.
    """
    model_config = ConfigDict(frozen=True)

    source: Source = Field(default=Source.GITHUB, description="Remote system hosting the entity")
    owner: str = Field(..., min_length=1, description="Login of the owning user or organisation")
    name: str = Field(..., min_length=1, description="Repository name")

    @classmethod
    def github(cls, owner: str, name: str) -> "EntityId":
        return cls(source=Source.GITHUB, owner=owner, name=name)

    @classmethod
    def parse_url(cls, url: str) -> "EntityId":
        """
        Resolves an absolute repository URL into an EntityId.

        Only the first two path segments are used, so links into a repository
        (``/tree/main``, ``/blob/...``) resolve to the repository itself.

        Raises:
            InvalidEntityIdException: If the URL is relative, on another host or lacks owner/name.
        """
        try:
            parts = urlsplit(url.strip())
        except ValueError as e:
            raise InvalidEntityIdException(f"Malformed URL '{url}': {e}") from e

        if parts.scheme not in ("http", "https"):
            raise InvalidEntityIdException(f"Not an absolute http(s) URL: '{url}'")

        host = (parts.hostname or "").lower()
        if not host:
            raise InvalidEntityIdException(f"Missing host in URL: '{url}'")
        if host not in GITHUB_HOSTS:
            raise InvalidEntityIdException(f"Unsupported host: '{host}'")

        segments = [s.strip() for s in parts.path.split("/")[1:3]]
        if not segments or not segments[0]:
            raise InvalidEntityIdException(f"Missing owner in URL: '{url}'")
        if len(segments) < 2 or not segments[1]:
            raise InvalidEntityIdException(f"Missing repository name in URL: '{url}'")

        return cls.github(segments[0], segments[1])

    @classmethod
    def parse_ident(cls, text: str) -> "EntityId":
        """
        Parses free-form user input: a full URL, ``github.com/<owner>/<name>`` or ``<owner>/<name>``.
        """
        text = text.strip()
        try:
            return cls.parse_url(text)
        except InvalidEntityIdException:
            pass

        if text.startswith("github.com/"):
            rest = text[len("github.com/"):]
            error = "expected github.com/<owner>/<name>"
        else:
            rest = text
            error = "expected <owner>/<name>"

        owner, sep, name = rest.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise InvalidEntityIdException(f"Invalid repository '{text}': {error}")
        return cls.github(owner, name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return f"https://{self.source.domain}/{self.owner}/{self.name}"

    @property
    def pretty_url(self) -> str:
        return f"{self.source.domain}/{self.owner}/{self.name}"

    def sort_key(self) -> Tuple[str, str, str]:
        return (self.source.value, self.owner, self.name)

    def __lt__(self, other: "EntityId") -> bool:
        if not isinstance(other, EntityId):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __str__(self) -> str:
        return f"{self.source.value}:{self.owner}/{self.name}"


class Link(BaseModel):
    """An outbound link found in a list document, with the heading path it appeared under."""
    model_config = ConfigDict(frozen=True)

    target: EntityId
    section: Tuple[str, ...] = Field(default_factory=tuple, description="Heading titles, outermost first")


class EntityMetadata(BaseModel):
    """
    Immutable snapshot of a repository's metadata as reported by the remote system.
    """
    model_config = ConfigDict(frozen=True)

    id: EntityId
    description: Optional[str] = None
    last_pushed_at: Optional[datetime] = None
    last_pull_request_merged_at: Optional[datetime] = None
    stars: int = Field(0, ge=0, description="Total number of stargazers")
    forks: int = Field(0, ge=0)
    issues: int = Field(0, ge=0)
    pull_requests: int = Field(0, ge=0)
    primary_language: Optional[str] = None
    languages: Tuple[str, ...] = Field(default_factory=tuple, description="Top languages by size")
    updated_at: datetime = Field(..., description="When this snapshot was taken")

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.last_pushed_at or self.last_pull_request_merged_at

    def last_activity_relative(self, now: Optional[datetime] = None) -> Optional[str]:
        """Human readable age of the last activity, e.g. ``3 weeks``."""
        activity = self.last_activity
        if activity is None:
            return None

        days = ((now or utcnow()) - activity).days
        if days < 1:
            return "today"
        if days < 2:
            return "yesterday"
        if days < 7:
            return f"{days} days"
        if days < 14:
            return "1 week"
        if days < 30:
            return f"{days // 7} weeks"
        if days < 60:
            return "1 month"
        if days < 365:
            return f"{days // 30} months"
        if days < 365 * 2:
            return "1 year"
        return f"{days // 365} years"


class EntityFound(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["found"] = "found"
    metadata: EntityMetadata

    @property
    def id(self) -> EntityId:
        return self.metadata.id

    @property
    def updated_at(self) -> datetime:
        return self.metadata.updated_at


class EntityNotFound(BaseModel):
    """The remote system affirmatively reported that the entity does not exist."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["not_found"] = "not_found"
    id: EntityId
    updated_at: datetime


EntityRecord = Annotated[Union[EntityFound, EntityNotFound], Field(discriminator="kind")]
entity_record_adapter = TypeAdapter(EntityRecord)


class ListDocument(BaseModel):
    """An awesome-list document: its own metadata, raw markdown and the links extracted from it."""
    model_config = ConfigDict(frozen=True)

    metadata: EntityMetadata
    raw_content: str
    links: Tuple[Link, ...] = Field(default_factory=tuple)
    updated_at: datetime

    @property
    def id(self) -> EntityId:
        return self.metadata.id


class ResolvedLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    link: Link
    metadata: EntityMetadata


class AggregateView(BaseModel):
    """
    A list document plus the metadata of every link that could be resolved.
    Published views are never mutated; a rebuild produces a new instance.
    """
    model_config = ConfigDict(frozen=True)

    document: ListDocument
    resolved: Tuple[ResolvedLink, ...] = Field(default_factory=tuple)
    not_found: Tuple[EntityId, ...] = Field(
        default_factory=tuple,
        description="Links the remote system reported as non-existent",
    )

    @property
    def unresolved(self) -> List[EntityId]:
        """Link targets neither resolved nor known to be missing, sorted and deduplicated."""
        resolved = {r.link.target for r in self.resolved}
        missing = set(self.not_found)
        return sorted({
            link.target for link in self.document.links
            if link.target not in resolved and link.target not in missing
        })

    @property
    def unresolved_count(self) -> int:
        return len(self.unresolved)

    @property
    def has_unresolved(self) -> bool:
        return self.unresolved_count > 0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    inserted_at: datetime

    def is_fresh(self, now: datetime, ttl_seconds: float) -> bool:
        return (now - self.inserted_at).total_seconds() < ttl_seconds


class RefreshMetadata(BaseModel):
    """Re-fetch an entity's metadata from the source and persist it."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["refresh_metadata"] = "refresh_metadata"
    id: EntityId


class RefreshDocument(BaseModel):
    """Re-fetch a list document (content and metadata) from the source and persist it."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["refresh_document"] = "refresh_document"
    id: EntityId


RefreshTask = Annotated[Union[RefreshMetadata, RefreshDocument], Field(discriminator="kind")]


class EntityItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["entity"] = "entity"
    record: EntityRecord


class DocumentItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["document"] = "document"
    document: ListDocument


# Any record kept by a PersistentStore; used for export and import.
StoreItem = Annotated[Union[EntityItem, DocumentItem], Field(discriminator="kind")]
store_items_adapter = TypeAdapter(List[StoreItem])


def should_replace_entity(existing: Optional[EntityRecord], incoming: EntityRecord) -> bool:
    """
    Import merge policy for entity records.

    A found record always beats a not-found one regardless of timestamps;
    within the same variant the later snapshot wins.
    """
    if existing is None:
        return True
    if isinstance(incoming, EntityFound) and isinstance(existing, EntityNotFound):
        return True
    if isinstance(incoming, EntityNotFound) and isinstance(existing, EntityFound):
        return False
    return incoming.updated_at > existing.updated_at


def should_replace_document(existing: Optional[ListDocument], incoming: ListDocument) -> bool:
    if existing is None:
        return True
    return incoming.updated_at > existing.updated_at
