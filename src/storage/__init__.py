"""Storage backends for occurrences, issue groups and journey events."""

from typing import Optional

from src.config import Settings, StorageBackend, get_settings
from src.storage.base import (
    GroupConflictError,
    IssueRepository,
    RecordNotFoundError,
    RepositoryError,
    StorageUnavailableError,
)
from src.storage.memory import InMemoryIssueRepository
from src.storage.postgrest import PostgrestClient, PostgrestError, PostgrestIssueRepository


def create_repository(settings: Optional[Settings] = None) -> IssueRepository:
    """Create the repository selected by ``storage_backend``."""
    settings = settings or get_settings()
    if settings.storage_backend == StorageBackend.POSTGREST:
        return PostgrestIssueRepository(PostgrestClient(
            url=settings.postgrest_url,
            service_key=(
                settings.postgrest_service_key.get_secret_value()
                if settings.postgrest_service_key
                else None
            ),
            timeout=settings.storage_timeout_seconds,
        ))
    return InMemoryIssueRepository()


# Global repository instance
_repository: Optional[IssueRepository] = None


def get_repository() -> IssueRepository:
    """Get or create the global repository instance."""
    global _repository
    if _repository is None:
        _repository = create_repository()
    return _repository


def set_repository(repository: Optional[IssueRepository]) -> None:
    """Replace the global repository (None resets it)."""
    global _repository
    _repository = repository


__all__ = [
    "GroupConflictError",
    "InMemoryIssueRepository",
    "IssueRepository",
    "PostgrestClient",
    "PostgrestError",
    "PostgrestIssueRepository",
    "RecordNotFoundError",
    "RepositoryError",
    "StorageUnavailableError",
    "create_repository",
    "get_repository",
    "set_repository",
]
