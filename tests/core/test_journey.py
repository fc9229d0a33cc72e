"""Tests for journey graph construction."""

from datetime import timedelta

import pytest


def _exception(event_id, session_id, minutes, base_time, handled=False):
    from src.core.models import ExceptionEvent

    return ExceptionEvent(
        id=event_id,
        session_id=session_id,
        timestamp=base_time + timedelta(minutes=minutes),
        handled=handled,
    )


def _anr(event_id, session_id, minutes, base_time):
    from src.core.models import ANREvent

    return ANREvent(id=event_id, session_id=session_id, timestamp=base_time + timedelta(minutes=minutes))


@pytest.fixture
def two_sessions(make_activity):
    """s1: A → B → A, s2: A → B."""
    from src.core.models import LifecycleActivityType

    return [
        make_activity("A", session_id="s1", minutes=0),
        make_activity("B", session_id="s1", minutes=1),
        make_activity("A", session_id="s1", minutes=2, type=LifecycleActivityType.RESUMED),
        make_activity("A", session_id="s2", minutes=0),
        make_activity("B", session_id="s2", minutes=1),
    ]


class TestWalkSession:
    """Tests for the per-session walk."""

    def test_transitions_and_locations(self, two_sessions):
        from src.core.journey import walk_session

        path = walk_session("s1", [e for e in two_sessions if e.session_id == "s1"])

        assert path.locations == ["A", "B"]
        assert path.transitions == [("A", "B"), ("B", "A")]

    def test_non_entering_events_do_not_move(self, make_activity):
        from src.core.journey import walk_session
        from src.core.models import LifecycleActivityType

        events = [
            make_activity("A", minutes=0),
            make_activity("B", minutes=1, type=LifecycleActivityType.PAUSED),
            make_activity("A", minutes=2, type=LifecycleActivityType.RESUMED),
        ]
        path = walk_session("session-1", events)

        assert path.locations == ["A"]
        assert path.transitions == []

    def test_issue_attached_to_current_location(self, make_activity, base_time):
        from src.core.journey import walk_session
        from src.core.models import IssueKind

        events = [
            make_activity("A", minutes=0),
            make_activity("B", minutes=1),
            _exception("crash-1", "session-1", 2, base_time),
            _anr("anr-1", "session-1", 3, base_time),
        ]
        path = walk_session("session-1", events)

        assert path.issues[IssueKind.CRASH] == {"B": ["crash-1"]}
        assert path.issues[IssueKind.ANR] == {"B": ["anr-1"]}

    def test_issue_before_any_location_dropped(self, make_activity, base_time):
        from src.core.journey import walk_session
        from src.core.models import IssueKind

        events = [
            _exception("crash-0", "session-1", -1, base_time),
            make_activity("A", minutes=0),
        ]
        path = walk_session("session-1", events)

        assert path.dropped_issues == 1
        assert path.issues[IssueKind.CRASH] == {}

    def test_handled_exceptions_ignored(self, make_activity, base_time):
        from src.core.journey import walk_session
        from src.core.models import IssueKind

        events = [make_activity("A"), _exception("h-1", "session-1", 1, base_time, handled=True)]
        path = walk_session("session-1", events)

        assert path.issues[IssueKind.CRASH] == {}
        assert path.dropped_issues == 0

    def test_fragment_events_are_locations(self, base_time):
        from src.core.journey import walk_session
        from src.core.models import FragmentLifecycleEvent, LifecycleFragmentType

        events = [
            FragmentLifecycleEvent(
                id="f1", session_id="s", timestamp=base_time,
                type=LifecycleFragmentType.ATTACHED, class_name="HomeFragment", parent_activity="Main",
            ),
            FragmentLifecycleEvent(
                id="f2", session_id="s", timestamp=base_time + timedelta(seconds=1),
                type=LifecycleFragmentType.DETACHED, class_name="HomeFragment",
            ),
        ]
        path = walk_session("s", events)
        assert path.locations == ["HomeFragment"]


class TestJourneyGraphBuilder:
    """Tests for merging sessions into a graph."""

    def test_edge_value_counts_sessions(self, two_sessions):
        from src.core.journey import JourneyGraphBuilder

        graph = JourneyGraphBuilder().build(two_sessions, bidirectional=True)

        assert graph.edge_value("A", "B") == 2
        assert graph.edge_value("B", "A") == 1

    def test_repeated_transition_in_one_session_counts_once(self, make_activity):
        from src.core.journey import JourneyGraphBuilder

        events = [make_activity(name, minutes=i) for i, name in enumerate(["A", "B", "A", "B"])]
        graph = JourneyGraphBuilder().build(events)

        assert graph.edge_value("A", "B") == 1

    def test_non_bidirectional_skips_reverse_edges(self, two_sessions):
        from src.core.journey import JourneyGraphBuilder

        graph = JourneyGraphBuilder().build(two_sessions, bidirectional=False)

        assert graph.edge_value("A", "B") == 2
        assert graph.edge_value("B", "A") == 0

    def test_session_subset(self, two_sessions):
        from src.core.journey import JourneyGraphBuilder

        graph = JourneyGraphBuilder().build(two_sessions, sessions={"s2"})

        assert graph.edge_value("A", "B") == 1
        assert graph.edge_value("B", "A") == 0

    def test_event_order_does_not_matter(self, two_sessions):
        from src.core.journey import JourneyGraphBuilder

        builder = JourneyGraphBuilder()
        forward = builder.build(two_sessions)
        backward = builder.build(list(reversed(two_sessions)))

        assert sorted((l.source, l.target, l.value) for l in forward.links()) == \
            sorted((l.source, l.target, l.value) for l in backward.links())

    def test_same_timestamp_keeps_given_order(self, make_activity):
        from src.core.journey import JourneyGraphBuilder, group_by_session

        events = [
            make_activity("A", minutes=0, event_id="z-entered-first"),
            make_activity("B", minutes=0, event_id="a-entered-second"),
        ]

        assert [e.id for e in group_by_session(events)["session-1"]] == ["z-entered-first", "a-entered-second"]
        graph = JourneyGraphBuilder().build(events, bidirectional=True)
        assert graph.edge_value("A", "B") == 1
        assert graph.edge_value("B", "A") == 0

    def test_to_journey_attaches_groups(self, make_activity, base_time):
        from src.core.journey import JourneyGraphBuilder
        from src.core.models import EventIdSet, Group, IssueKind

        events = [
            make_activity("A", session_id="s1", minutes=0),
            make_activity("B", session_id="s1", minutes=1),
            _exception("c1", "s1", 2, base_time),
            make_activity("A", session_id="s2", minutes=0),
            _exception("c2", "s2", 1, base_time),
            _exception("c3", "s2", 2, base_time),
        ]
        group_x = Group(
            id="gx", app_id="app-1", kind=IssueKind.CRASH, fingerprint="x", name="X@A.kt",
            event_ids=EventIdSet(["c2", "c3"]),
        )
        group_y = Group(
            id="gy", app_id="app-1", kind=IssueKind.CRASH, fingerprint="y", name="Y@B.kt",
            event_ids=EventIdSet(["c1"]),
        )

        builder = JourneyGraphBuilder()
        graph = builder.build(events)
        journey = builder.to_journey(graph, {IssueKind.CRASH: [group_x, group_y]}, total_issues=3)
        data = journey.to_dict()

        assert data["totalIssues"] == 3
        nodes = {n["id"]: n for n in data["nodes"]}
        assert nodes["A"]["issues"]["crashes"] == [{"id": "gx", "title": "X@A.kt", "count": 2}]
        assert nodes["B"]["issues"]["crashes"] == [{"id": "gy", "title": "Y@B.kt", "count": 1}]
        assert nodes["A"]["issues"]["anrs"] == []
        assert data["links"] == [{"source": "A", "target": "B", "value": 1}]


class TestAttachIssues:
    """Tests for attach_issues."""

    def test_universe_restricts_counts(self):
        from src.core.journey import attach_issues
        from src.core.models import EventIdSet, Group, IssueKind

        group = Group(
            id="g", app_id="app-1", kind=IssueKind.CRASH, fingerprint="f", name="n",
            event_ids=EventIdSet(["a", "b", "c"]),
        )
        issues = attach_issues(EventIdSet(["a", "b"]), [group], universe={"a"})

        assert [(i.id, i.count) for i in issues] == [("g", 1)]

    def test_zero_count_groups_left_out(self):
        from src.core.journey import attach_issues
        from src.core.models import EventIdSet, Group, IssueKind

        group = Group(
            id="g", app_id="app-1", kind=IssueKind.CRASH, fingerprint="f", name="n",
            event_ids=EventIdSet(["z"]),
        )
        assert attach_issues(EventIdSet(["a"]), [group]) == []
