"""
Contribution Ranker - Ordering and paging of filtered groups

Turns a set of groups into the listing the dashboard shows:

1. Count each group's members that match the filter, dropping groups
   with none.
2. Compute each group's share of all matched occurrences.
3. Sort by matched count descending, then group id ascending.
4. Slice one page around a (count, id) cursor.

The total order in step 3 is what makes cursor pagination complete:
walking ``next`` cursors visits every group exactly once.
"""

import math
from bisect import bisect_left, bisect_right
from collections.abc import Sequence
from typing import Optional

from src.core.matcher import EventIdSetMatcher
from src.core.models import AppFilter, Group, GroupSummary, Page

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 1000


def sort_key(summary: GroupSummary) -> tuple[int, str]:
    return (-summary.count, summary.id)


def compute_contribution(summaries: Sequence[GroupSummary]) -> None:
    """Set each summary's percentage of the total matched count.

    Percentages have two decimals and add up to exactly 100: each share is
    floored to a hundredth of a percent, then the leftover hundredths go to
    the largest remainders, ties broken by rank order. With a zero total
    every percentage is NaN.
    """
    total = sum(s.count for s in summaries)
    if total == 0:
        for summary in summaries:
            summary.percentage_contribution = math.nan
        return

    shares = [divmod(s.count * 10000, total) for s in summaries]
    hundredths = [floor for floor, _ in shares]

    leftover = 10000 - sum(hundredths)
    order = sorted(range(len(summaries)), key=lambda i: (-shares[i][1],) + sort_key(summaries[i]))
    for i in order[:leftover]:
        hundredths[i] += 1

    for summary, value in zip(summaries, hundredths):
        summary.percentage_contribution = value / 100


def _cursor_key(ranked: Sequence[GroupSummary], app_filter: AppFilter) -> Optional[tuple[int, str]]:
    if not app_filter.has_cursor():
        return None
    if app_filter.key_count is not None:
        return (-app_filter.key_count, app_filter.key_id)
    for summary in ranked:
        if summary.id == app_filter.key_id:
            return sort_key(summary)
    return None


def paginate(
    ranked: Sequence[GroupSummary],
    app_filter: AppFilter,
    default_limit: int = DEFAULT_PAGE_LIMIT,
    max_limit: int = MAX_PAGE_LIMIT,
) -> Page:
    """
    Slice one page out of an already ranked list.

    A positive limit returns the groups after the cursor, a negative limit
    the groups before it. Without a cursor paging starts at the first
    (forward) or last (backward) group.
    """
    limit = app_filter.page_limit(default_limit, max_limit)
    keys = [sort_key(s) for s in ranked]
    cursor = _cursor_key(ranked, app_filter)

    if limit >= 0:
        start = bisect_right(keys, cursor) if cursor is not None else 0
        end = start + limit
        return Page(
            results=list(ranked[start:end]),
            next=end < len(ranked),
            previous=start > 0,
        )

    end = bisect_left(keys, cursor) if cursor is not None else len(ranked)
    start = max(0, end + limit)
    return Page(
        results=list(ranked[start:end]),
        next=end < len(ranked),
        previous=start > 0,
    )


class ContributionRanker:
    """
    Ranks groups by their matched occurrence count under a filter.

    Example:
        ranker = ContributionRanker(EventIdSetMatcher(repository))
        page = await ranker.rank(groups, app_filter)
        page.to_dict()  # {"results": [...], "meta": {"next": ..., "previous": ...}}
    """

    def __init__(
        self,
        matcher: EventIdSetMatcher,
        default_limit: int = DEFAULT_PAGE_LIMIT,
        max_limit: int = MAX_PAGE_LIMIT,
    ):
        self.matcher = matcher
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def summarize(self, groups: Sequence[Group], app_filter: AppFilter) -> list[GroupSummary]:
        """Matched counts and contributions for every group with at least one match, ranked."""
        counts = await self.matcher.matched_counts(groups, app_filter)
        summaries = [
            GroupSummary(group=g, count=counts[g.id])
            for g in groups
            if counts[g.id] > 0
        ]
        compute_contribution(summaries)
        summaries.sort(key=sort_key)
        return summaries

    async def rank(self, groups: Sequence[Group], app_filter: AppFilter) -> Page:
        """Rank groups and return the page selected by the filter's cursor."""
        summaries = await self.summarize(groups, app_filter)
        return paginate(summaries, app_filter, self.default_limit, self.max_limit)
