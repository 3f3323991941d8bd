from datetime import datetime
from typing import Optional


class AwesomeIndexException(Exception):
    """Base exception for all awesome-index errors."""
    pass

class ConfigurationException(AwesomeIndexException):
    """Raised when a required setting is missing or invalid."""
    pass

class InvalidEntityIdException(AwesomeIndexException):
    """Raised when a URL or identifier cannot be turned into an EntityId."""
    pass

class DocumentParseException(AwesomeIndexException):
    """Raised when the markdown token stream is malformed (unexpected closing token)."""
    pass

class SourceException(AwesomeIndexException):
    """Raised for transient failures talking to the remote source (network, 5xx, GraphQL errors)."""
    pass

class RateLimitExceededException(SourceException):
    """Raised when the remote source rate limit is hit, or while its deadline has not passed yet."""
    def __init__(self, reset_at: Optional[datetime], message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at.isoformat() if reset_at else 'unknown'}")

class DocumentNotFoundException(AwesomeIndexException):
    """Raised when a list document (or the repository holding it) does not exist."""
    pass

class NotAnAwesomeListException(AwesomeIndexException):
    """Raised when a document contains no links to any entity."""
    pass

class StorageException(AwesomeIndexException):
    """Raised when a persistent store operation fails."""
    pass
