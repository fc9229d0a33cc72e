"""In-process issue repository.

Keeps occurrences, journey events and groups in dictionaries. Group
creation is a conditional insert guarded by one ``asyncio.Lock`` per
(app, kind, fingerprint), so concurrent ingestion of a new fingerprint
produces exactly one group.
"""

import asyncio
from collections.abc import Iterable
from typing import Optional

import structlog

from src.core.models import (
    AppFilter,
    ExceptionEvent,
    Group,
    IssueKind,
    JourneyEvent,
    Occurrence,
    journey_event_from_occurrence,
    utcnow,
)
from src.storage.base import (
    GroupConflictError,
    IssueRepository,
    RecordNotFoundError,
)

logger = structlog.get_logger()


class InMemoryIssueRepository(IssueRepository):
    """
    Dictionary backed repository.

    Returned groups are copies; mutating them does not touch stored state.

    Example:
        repo = InMemoryIssueRepository()
        await repo.insert_occurrence(occurrence)
        groups = await repo.list_groups(app_id, IssueKind.CRASH)
    """

    def __init__(self):
        self._occurrences: dict[str, Occurrence] = {}
        self._lifecycle_events: list[tuple[str, JourneyEvent]] = []
        self._groups: dict[str, Group] = {}
        self._group_index: dict[tuple[str, IssueKind, str], str] = {}
        self._locks: dict[tuple[str, IssueKind, str], asyncio.Lock] = {}
        self.log = logger.bind(component="memory_repository")

    def _lock_for(self, key: tuple[str, IssueKind, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    # -------------------------------------------------------------------------
    # Occurrences
    # -------------------------------------------------------------------------

    async def insert_occurrence(self, occurrence: Occurrence) -> None:
        self._occurrences.setdefault(occurrence.id, occurrence)

    def add_lifecycle_events(self, app_id: str, events: Iterable[JourneyEvent]) -> None:
        """Seed lifecycle events for an app (they arrive from the SDK pipeline)."""
        for event in events:
            self._lifecycle_events.append((app_id, event))

    async def query_occurrences(
        self,
        app_filter: AppFilter,
        event_ids: Optional[Iterable[str]] = None,
        kind: Optional[IssueKind] = None,
    ) -> list[Occurrence]:
        if event_ids is not None:
            candidates = (self._occurrences[i] for i in set(event_ids) if i in self._occurrences)
        else:
            candidates = self._occurrences.values()

        matched = [
            o for o in candidates
            if app_filter.matches(o) and (kind is None or o.kind == kind)
        ]
        matched.sort(key=lambda o: (o.timestamp, o.id))
        return matched

    async def filter_event_ids(self, app_filter: AppFilter, event_ids: Iterable[str]) -> set[str]:
        return {o.id for o in await self.query_occurrences(app_filter, event_ids=event_ids)}

    async def query_journey_events(self, app_filter: AppFilter) -> list[JourneyEvent]:
        events: list[JourneyEvent] = [
            event for app_id, event in self._lifecycle_events
            if app_id == app_filter.app_id
            and app_filter.in_time_range(event.timestamp)
            and app_filter.matches_attributes(event.attributes)
        ]

        for occurrence in await self.query_occurrences(app_filter):
            event = journey_event_from_occurrence(occurrence)
            if isinstance(event, ExceptionEvent) and event.handled:
                continue
            events.append(event)

        events.sort(key=lambda e: e.timestamp)
        return events

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def find_group(self, app_id: str, kind: IssueKind, fingerprint: str) -> Optional[Group]:
        group_id = self._group_index.get((app_id, kind, fingerprint))
        if group_id is None:
            return None
        return self._groups[group_id].copy()

    async def insert_group(self, group: Group) -> Group:
        key = (group.app_id, group.kind, group.fingerprint)
        async with self._lock_for(key):
            if key in self._group_index:
                raise GroupConflictError(*key)
            # Yield while holding the lock so racing writers really queue up
            await asyncio.sleep(0)
            stored = group.copy()
            self._groups[stored.id] = stored
            self._group_index[key] = stored.id

        self.log.debug("Group inserted", group_id=group.id, fingerprint=group.fingerprint)
        return stored.copy()

    async def append_event(self, group_id: str, event_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise RecordNotFoundError(f"group {group_id} not found")
        group.add_event(event_id, at=utcnow())
        return group.copy()

    async def read_group(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise RecordNotFoundError(f"group {group_id} not found")
        return group.copy()

    async def list_groups(
        self,
        app_id: str,
        kind: IssueKind,
        app_filter: Optional[AppFilter] = None,
    ) -> list[Group]:
        groups = [
            g.copy() for g in self._groups.values()
            if g.app_id == app_id and g.kind == kind
        ]
        if app_filter is not None and app_filter.has_time_range():
            # Keep groups whose lifetime overlaps the window
            groups = [
                g for g in groups
                if g.created_at <= app_filter.to_time and g.updated_at >= app_filter.from_time
            ]
        groups.sort(key=lambda g: (-g.count, g.id))
        return groups

    async def groups_containing(self, app_id: str, kind: IssueKind, event_ids: Iterable[str]) -> list[Group]:
        wanted = set(event_ids)
        return [
            g.copy() for g in self._groups.values()
            if g.app_id == app_id and g.kind == kind and any(i in g.event_ids for i in wanted)
        ]
