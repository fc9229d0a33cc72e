"""
Issue Repository - Storage boundary for occurrences, groups and journey events.

Every component of the grouping core talks to storage through this
interface. Implementations own the durable records; callers only hold
working copies for the duration of a request.

Key guarantees an implementation must provide:
- ``insert_group`` is a conditional insert: at most one group per
  (app, kind, fingerprint), a losing writer gets ``GroupConflictError``
- ``append_event`` is idempotent
- Failures surface as ``StorageUnavailableError`` and are never retried here
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Optional

from src.core.models import AppFilter, Group, IssueKind, JourneyEvent, Occurrence


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class StorageUnavailableError(RepositoryError):
    """Raised when a storage call fails, times out or loses its connection."""

    pass


class RecordNotFoundError(RepositoryError):
    """Raised when a record is not found."""

    pass


class GroupConflictError(RepositoryError):
    """Raised when a group for the fingerprint was created concurrently."""

    def __init__(self, app_id: str, kind: IssueKind, fingerprint: str):
        super().__init__(f"group already exists for {kind.value} fingerprint {fingerprint!r} in app {app_id}")
        self.app_id = app_id
        self.kind = kind
        self.fingerprint = fingerprint


class IssueRepository(ABC):
    """Abstract storage boundary consumed by the grouping core."""

    # -------------------------------------------------------------------------
    # Occurrences
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_occurrence(self, occurrence: Occurrence) -> None:
        """Persist an occurrence. Re-inserting the same id is a no-op."""

    @abstractmethod
    async def query_occurrences(
        self,
        app_filter: AppFilter,
        event_ids: Optional[Iterable[str]] = None,
        kind: Optional[IssueKind] = None,
    ) -> list[Occurrence]:
        """Occurrences matching the filter, ordered by timestamp then id.

        Args:
            app_filter: Filter to apply (pagination fields are ignored)
            event_ids: Restrict to these ids when given
            kind: Restrict to one issue family when given
        """

    @abstractmethod
    async def filter_event_ids(self, app_filter: AppFilter, event_ids: Iterable[str]) -> set[str]:
        """Subset of ``event_ids`` whose occurrences satisfy the filter."""

    @abstractmethod
    async def query_journey_events(self, app_filter: AppFilter) -> list[JourneyEvent]:
        """Lifecycle, unhandled exception and ANR events ordered by timestamp."""

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_group(self, app_id: str, kind: IssueKind, fingerprint: str) -> Optional[Group]:
        """Group for a fingerprint, or None."""

    @abstractmethod
    async def insert_group(self, group: Group) -> Group:
        """Insert a new group.

        Raises:
            GroupConflictError: A group for the same fingerprint already exists
        """

    @abstractmethod
    async def append_event(self, group_id: str, event_id: str) -> Group:
        """Append a member id to a group (no-op if present).

        Raises:
            RecordNotFoundError: No such group
        """

    @abstractmethod
    async def read_group(self, group_id: str) -> Group:
        """Read a group by id.

        Raises:
            RecordNotFoundError: No such group
        """

    @abstractmethod
    async def list_groups(
        self,
        app_id: str,
        kind: IssueKind,
        app_filter: Optional[AppFilter] = None,
    ) -> list[Group]:
        """Groups of an app ordered by member count, optionally limited to ones active in the filter's time range."""

    @abstractmethod
    async def groups_containing(self, app_id: str, kind: IssueKind, event_ids: Iterable[str]) -> list[Group]:
        """Groups that have at least one of ``event_ids`` as a member."""

    async def close(self) -> None:
        """Release any held resources."""
