"""Tests for issue data models."""

from datetime import timedelta

import pytest


class TestEventIdSet:
    """Tests for EventIdSet."""

    def test_keeps_insertion_order(self):
        from src.core.models import EventIdSet

        ids = EventIdSet(["b", "a", "b", "c"])
        assert ids.to_list() == ["b", "a", "c"]
        assert len(ids) == 3

    def test_add_reports_new_members(self):
        from src.core.models import EventIdSet

        ids = EventIdSet()
        assert ids.add("a") is True
        assert ids.add("a") is False

    def test_intersection_in_member_order(self):
        from src.core.models import EventIdSet

        ids = EventIdSet(["c", "a", "b"])
        assert ids.intersection(["b", "c", "z"]).to_list() == ["c", "b"]


class TestGroup:
    """Tests for Group."""

    def test_add_event_updates_timestamp(self, base_time):
        from src.core.models import Group, IssueKind

        group = Group(
            id="g", app_id="app-1", kind=IssueKind.CRASH, fingerprint="f", name="n",
            created_at=base_time, updated_at=base_time,
        )
        later = base_time + timedelta(minutes=5)

        assert group.add_event("e1", at=later) is True
        assert group.updated_at == later
        assert group.add_event("e1", at=later + timedelta(minutes=1)) is False
        assert group.updated_at == later

    def test_round_trip_dict(self):
        from src.core.models import EventIdSet, Group, IssueKind

        group = Group(
            id="g", app_id="app-1", kind=IssueKind.ANR, fingerprint="f", name="n",
            event_ids=EventIdSet(["e1", "e2"]),
        )
        restored = Group.from_dict(group.to_dict())

        assert restored.kind == IssueKind.ANR
        assert restored.event_ids == group.event_ids
        assert group.to_dict()["count"] == 2


class TestAppFilter:
    """Tests for AppFilter."""

    @pytest.mark.parametrize("limit,expected", [
        (None, 10),
        (5, 5),
        (-5, -5),
        (5000, 1000),
        (-5000, -1000),
    ])
    def test_page_limit(self, limit, expected):
        from src.core.models import AppFilter

        assert AppFilter(app_id="app-1", limit=limit).page_limit(10, 1000) == expected

    def test_default_time_range(self, base_time):
        from src.core.models import AppFilter

        app_filter = AppFilter(app_id="app-1")
        assert not app_filter.has_time_range()

        app_filter.set_default_time_range(7, now=base_time)

        assert app_filter.to_time == base_time
        assert app_filter.from_time == base_time - timedelta(days=7)

    def test_empty_filter_matches_app(self, make_occurrence):
        from src.core.models import AppFilter

        assert AppFilter(app_id="app-1").matches(make_occurrence())
        assert not AppFilter(app_id="app-2").matches(make_occurrence())

    def test_attribute_sets(self, make_occurrence):
        from src.core.models import AppFilter

        occurrence = make_occurrence(device_manufacturer="Google", network_type="wifi")

        assert AppFilter(app_id="app-1", device_manufacturers=frozenset({"Google", "Samsung"})).matches(occurrence)
        assert not AppFilter(app_id="app-1", network_types=frozenset({"cellular"})).matches(occurrence)

    def test_without_cursor(self):
        from src.core.models import AppFilter

        app_filter = AppFilter(app_id="app-1", key_id="g1", key_count=3, limit=-5, countries=frozenset({"IN"}))
        plain = app_filter.without_cursor()

        assert plain.key_id is None
        assert plain.limit is None
        assert plain.countries == frozenset({"IN"})


class TestJourneyEvents:
    """Tests for journey event locations."""

    def test_activity_locations(self, make_activity):
        from src.core.models import LifecycleActivityType

        assert make_activity("A").location == "A"
        assert make_activity("A", type=LifecycleActivityType.PAUSED).location is None

    def test_occurrence_to_journey_event(self, make_occurrence):
        from src.core.models import ANREvent, ExceptionEvent, IssueKind, journey_event_from_occurrence

        assert isinstance(journey_event_from_occurrence(make_occurrence(kind=IssueKind.ANR)), ANREvent)
        event = journey_event_from_occurrence(make_occurrence(handled=True))
        assert isinstance(event, ExceptionEvent)
        assert event.handled is True
        assert event.location is None
