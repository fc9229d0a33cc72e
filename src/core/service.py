"""
Issue Service - Operations exposed to the HTTP layer

Wires the grouping core together over one injected IssueRepository:

- ingest_occurrence: fingerprint and group a new crash/ANR
- get_groups: filtered, ranked, paginated group listing
- get_group_occurrences: paginated occurrences of one group
- get_journey: navigation graph with crash/ANR groups on each node

Each call works on data fetched fresh for that request; nothing is shared
between requests except the repository itself.
"""

import asyncio
from bisect import bisect_left, bisect_right
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from enum import Enum
from typing import Optional

import structlog

from src.config import Settings, get_settings
from src.core.fingerprint import Fingerprinter, OccurrenceNormalizer
from src.core.groups import GroupStore
from src.core.journey import JourneyGraphBuilder, issue_kind
from src.core.matcher import EventIdSetMatcher
from src.core.models import (
    AppFilter,
    Group,
    IssueKind,
    Occurrence,
    Page,
)
from src.core.ranker import ContributionRanker
from src.storage.base import IssueRepository, RecordNotFoundError, RepositoryError
from src.utils.logging import log_operation

logger = structlog.get_logger()


class FailureKind(str, Enum):
    """Failure categories the transport layer maps to statuses."""
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"


class IssueServiceError(Exception):
    """A failed service call."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.UPSTREAM):
        super().__init__(message)
        self.kind = kind


class GroupNotFoundError(IssueServiceError):
    """The requested group does not exist for this app."""

    def __init__(self, message: str):
        super().__init__(message, kind=FailureKind.NOT_FOUND)


def paginate_occurrences(
    occurrences: Sequence[Occurrence],
    app_filter: AppFilter,
    default_limit: int,
    max_limit: int,
) -> Page:
    """Page through occurrences ordered by (timestamp, id).

    The cursor is the (key_timestamp, key_id) of the last item seen; a
    negative limit pages backwards from it.
    """
    limit = app_filter.page_limit(default_limit, max_limit)
    keys = [(o.timestamp, o.id) for o in occurrences]
    cursor = None
    if app_filter.has_cursor() and app_filter.key_timestamp is not None:
        cursor = (app_filter.key_timestamp, app_filter.key_id)

    if limit >= 0:
        start = bisect_right(keys, cursor) if cursor is not None else 0
        end = start + limit
    else:
        end = bisect_left(keys, cursor) if cursor is not None else len(occurrences)
        start = max(0, end + limit)

    return Page(
        results=list(occurrences[start:end]),
        next=end < len(occurrences),
        previous=start > 0,
    )


class IssueService:
    """
    Grouping and journey operations over an IssueRepository.

    Example:
        service = IssueService(InMemoryIssueRepository())
        await service.ingest_occurrence(occurrence)
        listing = await service.get_groups(app_id, IssueKind.CRASH, AppFilter(app_id=app_id))
    """

    def __init__(self, repository: IssueRepository, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.repository = repository

        self.fingerprinter = Fingerprinter(depth=self.settings.fingerprint_frame_depth)
        self.normalizer = OccurrenceNormalizer()
        self.groups = GroupStore(repository, self.fingerprinter)
        self.matcher = EventIdSetMatcher(repository)
        self.ranker = ContributionRanker(
            self.matcher,
            default_limit=self.settings.pagination_default_limit,
            max_limit=self.settings.pagination_max_limit,
        )
        self.journeys = JourneyGraphBuilder()

        self.log = logger.bind(component="issue_service")

    @asynccontextmanager
    async def _storage(self, operation: str):
        """Bound storage calls by the configured timeout and type their failures."""
        try:
            async with asyncio.timeout(self.settings.storage_timeout_seconds):
                yield
        except RecordNotFoundError as e:
            raise GroupNotFoundError(str(e)) from e
        except RepositoryError as e:
            raise IssueServiceError(f"{operation} failed: {e}") from e
        except TimeoutError as e:
            raise IssueServiceError(f"{operation} timed out") from e

    def _prepare(self, app_filter: AppFilter) -> AppFilter:
        prepared = replace(app_filter)
        if not prepared.has_time_range():
            prepared.set_default_time_range(self.settings.default_time_range_days)
        return prepared

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest_occurrence(self, occurrence: Occurrence) -> Optional[str]:
        """
        Store an occurrence and add it to its group.

        Handled exceptions are stored but not grouped.

        Returns:
            The group id, or None for handled exceptions
        """
        async with self._storage("ingest occurrence"):
            await self.repository.insert_occurrence(occurrence)
            if occurrence.kind == IssueKind.CRASH and occurrence.handled:
                return None
            return await self.groups.add_occurrence(occurrence)

    async def ingest_payload(self, app_id: str, raw: dict) -> Optional[str]:
        """Normalize a raw SDK payload and ingest it."""
        occurrence = self.normalizer.normalize(app_id, raw)
        return await self.ingest_occurrence(occurrence)

    # =========================================================================
    # Groups
    # =========================================================================

    async def get_groups(self, app_id: str, kind: IssueKind, app_filter: AppFilter) -> dict:
        """
        Ranked page of an app's groups under a filter.

        Returns:
            {"results": [group summaries], "meta": {"next": bool, "previous": bool}}
        """
        app_filter = self._prepare(app_filter)

        with log_operation("get_groups", self.log, app_id=app_id, kind=kind.value) as op:
            async with self._storage("list groups"):
                groups = await self.groups.list(app_id, kind)
                page = await self.ranker.rank(groups, app_filter)
            op["results"] = len(page.results)

        return page.to_dict()

    async def get_group(self, app_id: str, group_id: str, kind: Optional[IssueKind] = None) -> Group:
        """Read a group, treating groups of another app (or kind) as missing."""
        async with self._storage("read group"):
            group = await self.groups.get(group_id)
        if group.app_id != app_id or (kind is not None and group.kind != kind):
            raise GroupNotFoundError(f"group {group_id} not found")
        return group

    async def get_group_occurrences(
        self,
        app_id: str,
        group_id: str,
        app_filter: AppFilter,
        kind: Optional[IssueKind] = None,
    ) -> dict:
        """
        Paginated occurrences of one group that match the filter.

        Returns:
            {"results": [occurrences], "meta": {"next": bool, "previous": bool}}
        """
        group = await self.get_group(app_id, group_id, kind)
        app_filter = self._prepare(app_filter)

        with log_operation("get_group_occurrences", self.log, app_id=app_id, group_id=group_id) as op:
            async with self._storage("query group occurrences"):
                occurrences = await self.repository.query_occurrences(
                    app_filter.without_cursor(),
                    event_ids=group.event_ids,
                )
            page = paginate_occurrences(
                occurrences,
                app_filter,
                self.settings.pagination_default_limit,
                self.settings.pagination_max_limit,
            )
            op["results"] = len(page.results)

        return page.to_dict()

    # =========================================================================
    # Journey
    # =========================================================================

    async def get_journey(
        self,
        app_id: str,
        app_filter: AppFilter,
        bidirectional: bool = False,
        group_id: Optional[str] = None,
    ) -> dict:
        """
        Navigation journey with attached issue groups.

        Args:
            app_id: App to build the journey for
            app_filter: Filter over events
            bidirectional: Keep both directions of two-way transitions
            group_id: Only use sessions that hit this group

        Returns:
            {"totalIssues": int, "nodes": [...], "links": [...]}
        """
        app_filter = self._prepare(app_filter)
        focus = await self.get_group(app_id, group_id) if group_id else None

        with log_operation("get_journey", self.log, app_id=app_id, group_id=group_id) as op:
            async with self._storage("query journey events"):
                events = await self.repository.query_journey_events(app_filter)

            universe: dict[IssueKind, set[str]] = {IssueKind.CRASH: set(), IssueKind.ANR: set()}
            for event in events:
                kind = issue_kind(event)
                if kind is not None:
                    universe[kind].add(event.id)

            sessions = None
            if focus is not None:
                sessions = {
                    e.session_id for e in events
                    if e.id in universe[focus.kind] and e.id in focus.event_ids
                }

            graph = self.journeys.build(events, bidirectional=bidirectional, sessions=sessions)

            groups: dict[IssueKind, list[Group]] = {}
            async with self._storage("query journey groups"):
                for kind in (IssueKind.CRASH, IssueKind.ANR):
                    node_ids = graph.all_issue_ids(kind)
                    groups[kind] = (
                        await self.repository.groups_containing(app_id, kind, node_ids) if node_ids else []
                    )

            journey = self.journeys.to_journey(
                graph,
                groups,
                universe=universe,
                total_issues=len(universe[IssueKind.CRASH]) + len(universe[IssueKind.ANR]),
            )
            op["nodes"] = len(journey.nodes)
            op["links"] = len(journey.links)

        return journey.to_dict()
