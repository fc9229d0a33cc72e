"""Event id set matching.

Grouping is durable metadata; filtering is a query-time projection over
it. The matcher intersects a group's members with the occurrences that
satisfy a filter without ever re-deriving the grouping.
"""

import asyncio
from collections.abc import Sequence

from src.core.models import AppFilter, EventIdSet, Group
from src.storage.base import IssueRepository


class EventIdSetMatcher:
    """Projects groups through an AppFilter."""

    def __init__(self, repository: IssueRepository):
        self.repository = repository

    async def matching_ids(self, group: Group, app_filter: AppFilter) -> EventIdSet:
        """Members of ``group`` that satisfy ``app_filter``, in member order.

        An empty result is a valid answer, not an error.
        """
        if not group.event_ids:
            return EventIdSet()

        matched = await self.repository.filter_event_ids(app_filter.without_cursor(), group.event_ids)
        return group.event_ids.intersection(matched)

    async def matched_counts(self, groups: Sequence[Group], app_filter: AppFilter) -> dict[str, int]:
        """Matched member count for every group, keyed by group id."""
        id_sets = await asyncio.gather(*(self.matching_ids(g, app_filter) for g in groups))
        return {group.id: len(ids) for group, ids in zip(groups, id_sets)}
