"""
Journey Graph - Screen-to-screen navigation with attached issues

Reconstructs how users move through an app from lifecycle events:

    Ordered events → per-session paths (map) → merged graph (reduce)
                   → crash/ANR groups attached to nodes

Each session is walked independently. A location-entering lifecycle event
(activity created/resumed, fragment attached/resumed) moves the session's
cursor; moving to a different location emits a transition. Unhandled
exceptions and ANRs are pinned to the location the cursor is on.

The reduce step merges transitions by (source, target). An edge's value
is the number of distinct sessions that made the transition, not the
number of times it happened.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional

import networkx as nx
import structlog

from src.core.models import (
    ANREvent,
    EventIdSet,
    ExceptionEvent,
    Group,
    IssueKind,
    Journey,
    JourneyEvent,
    JourneyLink,
    JourneyNode,
    NodeIssue,
)

logger = structlog.get_logger()


@dataclass
class SessionPath:
    """Partial journey of one session."""
    session_id: str
    locations: list[str] = field(default_factory=list)  # Distinct, in order of first entry
    transitions: list[tuple[str, str]] = field(default_factory=list)  # In order, repeats kept
    issues: dict[IssueKind, dict[str, list[str]]] = field(
        default_factory=lambda: {IssueKind.CRASH: {}, IssueKind.ANR: {}}
    )  # kind -> location -> event ids
    dropped_issues: int = 0  # Issues seen before any location


def issue_kind(event: JourneyEvent) -> Optional[IssueKind]:
    if isinstance(event, ExceptionEvent):
        return None if event.handled else IssueKind.CRASH
    if isinstance(event, ANREvent):
        return IssueKind.ANR
    return None


def group_by_session(events: Iterable[JourneyEvent]) -> dict[str, list[JourneyEvent]]:
    """Split events by session, keeping chronological order within each.

    Events sharing a timestamp stay in the order they were given.
    """
    ordered = sorted(events, key=lambda e: e.timestamp)
    sessions: dict[str, list[JourneyEvent]] = {}
    for event in ordered:
        sessions.setdefault(event.session_id, []).append(event)
    return sessions


def walk_session(session_id: str, events: Sequence[JourneyEvent]) -> SessionPath:
    """Walk one session's chronological events into a SessionPath."""
    path = SessionPath(session_id=session_id)
    seen: set[str] = set()
    current: Optional[str] = None

    for event in events:
        location = event.location
        if location:
            if location not in seen:
                seen.add(location)
                path.locations.append(location)
            if current is not None and current != location:
                path.transitions.append((current, location))
            current = location
            continue

        kind = issue_kind(event)
        if kind is None:
            continue
        if current is None:
            # Cannot be localized to a node
            path.dropped_issues += 1
            continue
        path.issues[kind].setdefault(current, []).append(event.id)

    return path


def session_paths(events: Iterable[JourneyEvent]) -> list[SessionPath]:
    """Map step: one SessionPath per session, sessions in order of first event."""
    return [walk_session(session_id, evs) for session_id, evs in group_by_session(events).items()]


class JourneyGraph:
    """
    Directed graph of locations with session-counted edges.

    Backed by a ``networkx.DiGraph``. Node attributes hold the issue event
    ids recorded at that location; edge attributes hold the set of
    sessions that made the transition.
    """

    def __init__(self, bidirectional: bool = True):
        self.bidirectional = bidirectional
        self.graph = nx.DiGraph()

    def _ensure_node(self, location: str) -> None:
        if location not in self.graph:
            self.graph.add_node(
                location,
                issue_ids={IssueKind.CRASH: EventIdSet(), IssueKind.ANR: EventIdSet()},
            )

    def add_path(self, path: SessionPath) -> None:
        """Merge one session's partial journey into the graph."""
        for location in path.locations:
            self._ensure_node(location)

        for source, target in path.transitions:
            if self.graph.has_edge(source, target):
                self.graph.edges[source, target]["sessions"].add(path.session_id)
                continue
            if not self.bidirectional and self.graph.has_edge(target, source):
                continue
            self.graph.add_edge(source, target, sessions={path.session_id})

        for kind, by_location in path.issues.items():
            for location, event_ids in by_location.items():
                node_ids = self.graph.nodes[location]["issue_ids"][kind]
                for event_id in event_ids:
                    node_ids.add(event_id)

    @classmethod
    def from_paths(cls, paths: Iterable[SessionPath], bidirectional: bool = True) -> "JourneyGraph":
        """Reduce step: merge session paths in order."""
        journey = cls(bidirectional=bidirectional)
        for path in paths:
            journey.add_path(path)
        return journey

    @property
    def nodes(self) -> list[str]:
        return list(self.graph.nodes)

    def edge_value(self, source: str, target: str) -> int:
        """Distinct sessions that moved from source to target."""
        if not self.graph.has_edge(source, target):
            return 0
        return len(self.graph.edges[source, target]["sessions"])

    def links(self) -> list[JourneyLink]:
        return [
            JourneyLink(source=u, target=v, value=len(data["sessions"]))
            for u, v, data in self.graph.edges(data=True)
        ]

    def node_issue_ids(self, location: str, kind: IssueKind) -> EventIdSet:
        return self.graph.nodes[location]["issue_ids"][kind]

    def all_issue_ids(self, kind: IssueKind) -> set[str]:
        ids: set[str] = set()
        for location in self.graph.nodes:
            ids.update(self.node_issue_ids(location, kind))
        return ids


def attach_issues(
    node_ids: EventIdSet,
    groups: Sequence[Group],
    universe: Optional[set[str]] = None,
) -> list[NodeIssue]:
    """
    Per-group counts of a node's issue ids.

    Only ids inside ``universe`` (the filter-matching issue ids) count.
    Groups with a zero count are left out; the rest are sorted by count
    descending, then id.
    """
    ids = set(node_ids) if universe is None else {i for i in node_ids if i in universe}
    issues = []
    for group in groups:
        count = group.matching_event_count(ids)
        if count > 0:
            issues.append(NodeIssue(id=group.id, title=group.name, count=count))
    issues.sort(key=lambda issue: (-issue.count, issue.id))
    return issues


class JourneyGraphBuilder:
    """
    Builds journeys from ordered lifecycle and issue events.

    Example:
        builder = JourneyGraphBuilder()
        graph = builder.build(events, bidirectional=False)
        journey = builder.to_journey(graph, {IssueKind.CRASH: crash_groups}, total_issues=12)
    """

    def __init__(self):
        self.log = logger.bind(component="journey_builder")

    def build(
        self,
        events: Iterable[JourneyEvent],
        bidirectional: bool = True,
        sessions: Optional[set[str]] = None,
    ) -> JourneyGraph:
        """
        Build the journey graph.

        Args:
            events: Lifecycle, exception and ANR events in any order
            bidirectional: Keep both A→B and B→A. When False, a transition
                whose reverse edge already exists is skipped.
            sessions: Only consider these sessions when given
        """
        if sessions is not None:
            events = [e for e in events if e.session_id in sessions]

        paths = session_paths(events)
        graph = JourneyGraph.from_paths(paths, bidirectional=bidirectional)

        self.log.debug(
            "Journey built",
            sessions=len(paths),
            nodes=graph.graph.number_of_nodes(),
            edges=graph.graph.number_of_edges(),
            dropped_issues=sum(p.dropped_issues for p in paths),
        )
        return graph

    def to_journey(
        self,
        graph: JourneyGraph,
        groups: Mapping[IssueKind, Sequence[Group]],
        universe: Optional[Mapping[IssueKind, set[str]]] = None,
        total_issues: int = 0,
    ) -> Journey:
        """Attach issue groups to every node and produce the output shape."""
        nodes = []
        for location in graph.nodes:
            issues = {
                kind: attach_issues(
                    graph.node_issue_ids(location, kind),
                    groups.get(kind, ()),
                    universe.get(kind) if universe is not None else None,
                )
                for kind in (IssueKind.CRASH, IssueKind.ANR)
            }
            nodes.append(JourneyNode(id=location, crashes=issues[IssueKind.CRASH], anrs=issues[IssueKind.ANR]))

        return Journey(nodes=nodes, links=graph.links(), total_issues=total_issues)
