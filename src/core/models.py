"""
Issue Models - Occurrences, Groups, Filters and Journey Types

Shared data model for crash/ANR grouping and the session journey graph.
Occurrences and groups are durable records owned by the storage layer;
everything here is a working copy reconstructed per request.
"""

import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union


class IssueKind(str, Enum):
    """Families of grouped issues."""
    CRASH = "crash"  # Unhandled exception
    ANR = "anr"      # Application not responding


class LifecycleActivityType(str, Enum):
    """Activity lifecycle transitions reported by the SDK."""
    CREATED = "created"
    RESUMED = "resumed"
    PAUSED = "paused"
    DESTROYED = "destroyed"


class LifecycleFragmentType(str, Enum):
    """Fragment lifecycle transitions reported by the SDK."""
    ATTACHED = "attached"
    RESUMED = "resumed"
    PAUSED = "paused"
    DETACHED = "detached"


ENTERING_ACTIVITY_TYPES = frozenset({LifecycleActivityType.CREATED, LifecycleActivityType.RESUMED})
ENTERING_FRAGMENT_TYPES = frozenset({LifecycleFragmentType.ATTACHED, LifecycleFragmentType.RESUMED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse datetime from ISO strings, epoch seconds or datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# =============================================================================
# Occurrences
# =============================================================================


@dataclass(frozen=True)
class StackFrame:
    """A single stack frame."""
    class_name: Optional[str] = None  # Declaring type, e.g. "com.example.MainActivity"
    method_name: Optional[str] = None
    file_name: Optional[str] = None
    line_number: Optional[int] = None
    in_app: bool = True

    def to_dict(self) -> dict:
        return {
            "class_name": self.class_name,
            "method_name": self.method_name,
            "file_name": self.file_name,
            "line_number": self.line_number,
            "in_app": self.in_app,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StackFrame":
        return cls(
            class_name=data.get("class_name"),
            method_name=data.get("method_name"),
            file_name=data.get("file_name"),
            line_number=data.get("line_number"),
            in_app=data.get("in_app", True),
        )


@dataclass(frozen=True)
class AppAttributes:
    """Filterable attributes captured alongside every occurrence."""
    app_version: str = ""
    app_build: str = ""
    os_name: str = ""
    os_version: str = ""
    device_manufacturer: str = ""
    device_name: str = ""
    device_locale: str = ""
    country_code: str = ""
    network_type: str = ""
    network_provider: str = ""
    network_generation: str = ""

    def to_dict(self) -> dict:
        return {
            "app_version": self.app_version,
            "app_build": self.app_build,
            "os_name": self.os_name,
            "os_version": self.os_version,
            "device_manufacturer": self.device_manufacturer,
            "device_name": self.device_name,
            "device_locale": self.device_locale,
            "country_code": self.country_code,
            "network_type": self.network_type,
            "network_provider": self.network_provider,
            "network_generation": self.network_generation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AppAttributes":
        return cls(**{key: str(data.get(key) or "") for key in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Occurrence:
    """
    A single captured exception or ANR.

    Created at ingestion time and never modified afterwards. Groups refer
    to occurrences by id only.
    """
    id: str
    app_id: str
    session_id: str
    timestamp: datetime
    kind: IssueKind = IssueKind.CRASH
    frames: tuple[StackFrame, ...] = ()
    exception_type: Optional[str] = None
    message: Optional[str] = None
    thread_name: Optional[str] = None
    handled: bool = False  # Exceptions only
    foreground: bool = True
    attributes: AppAttributes = field(default_factory=AppAttributes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.kind.value,
            "frames": [f.to_dict() for f in self.frames],
            "exception_type": self.exception_type,
            "message": self.message,
            "thread_name": self.thread_name,
            "handled": self.handled,
            "foreground": self.foreground,
            "attribute": self.attributes.to_dict(),
        }


# =============================================================================
# Groups
# =============================================================================


class EventIdSet:
    """Set of event ids that remembers insertion order."""

    def __init__(self, ids: Iterable[str] = ()):
        self._ids: dict[str, None] = {}
        for event_id in ids:
            self.add(event_id)

    def add(self, event_id: str) -> bool:
        """Add an id. Returns False when it was already present."""
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        return True

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EventIdSet):
            return list(self._ids) == list(other._ids)
        return NotImplemented

    def __repr__(self) -> str:
        return f"EventIdSet({list(self._ids)!r})"

    def intersection(self, ids: Iterable[str]) -> "EventIdSet":
        """Members also present in ``ids``, in member order."""
        wanted = ids if isinstance(ids, (set, frozenset, EventIdSet)) else set(ids)
        return EventIdSet(event_id for event_id in self._ids if event_id in wanted)

    def to_list(self) -> list[str]:
        return list(self._ids)


@dataclass
class Group:
    """
    Durable cluster of occurrences sharing one fingerprint.

    Exactly one group exists per (app, kind, fingerprint). The id never
    changes and members are only ever appended.
    """
    id: str
    app_id: str
    kind: IssueKind
    fingerprint: str
    name: str
    event_ids: EventIdSet = field(default_factory=EventIdSet)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def count(self) -> int:
        return len(self.event_ids)

    def add_event(self, event_id: str, at: Optional[datetime] = None) -> bool:
        """Append a member id. No-op (returns False) for existing members."""
        added = self.event_ids.add(event_id)
        if added:
            self.updated_at = at or utcnow()
        return added

    def matching_event_count(self, ids: Iterable[str]) -> int:
        """Count how many of ``ids`` are members of this group."""
        return sum(1 for event_id in set(ids) if event_id in self.event_ids)

    def copy(self) -> "Group":
        return replace(self, event_ids=EventIdSet(self.event_ids))

    def to_dict(self, include_event_ids: bool = True) -> dict:
        data = {
            "id": self.id,
            "app_id": self.app_id,
            "type": self.kind.value,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "count": self.count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_event_ids:
            data["event_ids"] = self.event_ids.to_list()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Group":
        return cls(
            id=str(data["id"]),
            app_id=str(data["app_id"]),
            kind=IssueKind(data.get("type", IssueKind.CRASH.value)),
            fingerprint=data["fingerprint"],
            name=data.get("name") or "",
            event_ids=EventIdSet(str(i) for i in data.get("event_ids") or []),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class GroupSummary:
    """A group as it appears in a filtered, ranked listing."""
    group: Group
    count: int  # Members matching the request filter
    percentage_contribution: float = math.nan

    @property
    def id(self) -> str:
        return self.group.id

    def to_dict(self) -> dict:
        # Member ids are omitted, they can get really large
        data = self.group.to_dict(include_event_ids=False)
        data["count"] = self.count
        data["percentage_contribution"] = (
            None if math.isnan(self.percentage_contribution) else self.percentage_contribution
        )
        return data


@dataclass
class Page:
    """One page of a cursor-paginated listing."""
    results: list
    next: bool = False
    previous: bool = False

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "meta": {"next": self.next, "previous": self.previous},
        }


# =============================================================================
# Filters
# =============================================================================


@dataclass
class AppFilter:
    """
    Query-time predicate over occurrences and journey events.

    Empty attribute sets place no constraint. A ``(version, None)`` pair
    matches every build of that version. Built per request, never stored.
    """
    app_id: str
    from_time: Optional[datetime] = None
    to_time: Optional[datetime] = None
    versions: frozenset[tuple[str, Optional[str]]] = frozenset()
    os_names: frozenset[str] = frozenset()
    countries: frozenset[str] = frozenset()
    device_manufacturers: frozenset[str] = frozenset()
    device_names: frozenset[str] = frozenset()
    locales: frozenset[str] = frozenset()
    network_types: frozenset[str] = frozenset()
    network_providers: frozenset[str] = frozenset()
    network_generations: frozenset[str] = frozenset()

    # Pagination
    key_id: Optional[str] = None
    key_timestamp: Optional[datetime] = None
    key_count: Optional[int] = None
    limit: Optional[int] = None

    def has_time_range(self) -> bool:
        return self.from_time is not None and self.to_time is not None

    def set_default_time_range(self, days: int = 7, now: Optional[datetime] = None) -> None:
        """Set the window to the last ``days`` days ending now."""
        self.to_time = now or utcnow()
        self.from_time = self.to_time - timedelta(days=days)

    def has_cursor(self) -> bool:
        return self.key_id is not None

    def page_limit(self, default: int, maximum: int) -> int:
        """Signed page size, capped at ``maximum``. Negative pages backwards."""
        limit = self.limit if self.limit else default
        size = min(abs(limit), maximum)
        return -size if limit < 0 else size

    def in_time_range(self, timestamp: datetime) -> bool:
        if self.from_time is not None and timestamp < self.from_time:
            return False
        if self.to_time is not None and timestamp > self.to_time:
            return False
        return True

    def matches_attributes(self, attributes: AppAttributes) -> bool:
        if self.versions and not any(
            attributes.app_version == version and (build is None or attributes.app_build == build)
            for version, build in self.versions
        ):
            return False

        constraints = (
            (self.os_names, attributes.os_name),
            (self.countries, attributes.country_code),
            (self.device_manufacturers, attributes.device_manufacturer),
            (self.device_names, attributes.device_name),
            (self.locales, attributes.device_locale),
            (self.network_types, attributes.network_type),
            (self.network_providers, attributes.network_provider),
            (self.network_generations, attributes.network_generation),
        )
        return all(not allowed or value in allowed for allowed, value in constraints)

    def matches(self, occurrence: Occurrence) -> bool:
        """Check whether an occurrence satisfies every constraint."""
        return (
            occurrence.app_id == self.app_id
            and self.in_time_range(occurrence.timestamp)
            and self.matches_attributes(occurrence.attributes)
        )

    def without_cursor(self) -> "AppFilter":
        return replace(self, key_id=None, key_timestamp=None, key_count=None, limit=None)


# =============================================================================
# Journey events (tagged union over the event kinds a journey consumes)
# =============================================================================


@dataclass(frozen=True)
class ActivityLifecycleEvent:
    id: str
    session_id: str
    timestamp: datetime
    type: LifecycleActivityType
    class_name: str
    attributes: AppAttributes = field(default_factory=AppAttributes)

    @property
    def location(self) -> Optional[str]:
        """Location entered by this event, if it enters one."""
        return self.class_name if self.type in ENTERING_ACTIVITY_TYPES else None


@dataclass(frozen=True)
class FragmentLifecycleEvent:
    id: str
    session_id: str
    timestamp: datetime
    type: LifecycleFragmentType
    class_name: str
    parent_activity: Optional[str] = None
    attributes: AppAttributes = field(default_factory=AppAttributes)

    @property
    def location(self) -> Optional[str]:
        return self.class_name if self.type in ENTERING_FRAGMENT_TYPES else None


@dataclass(frozen=True)
class ExceptionEvent:
    id: str
    session_id: str
    timestamp: datetime
    handled: bool = False
    attributes: AppAttributes = field(default_factory=AppAttributes)

    location = None


@dataclass(frozen=True)
class ANREvent:
    id: str
    session_id: str
    timestamp: datetime
    attributes: AppAttributes = field(default_factory=AppAttributes)

    location = None


JourneyEvent = Union[ActivityLifecycleEvent, FragmentLifecycleEvent, ExceptionEvent, ANREvent]


def journey_event_from_occurrence(occurrence: Occurrence) -> JourneyEvent:
    """View a stored occurrence as a journey issue event."""
    if occurrence.kind == IssueKind.ANR:
        return ANREvent(
            id=occurrence.id,
            session_id=occurrence.session_id,
            timestamp=occurrence.timestamp,
            attributes=occurrence.attributes,
        )
    return ExceptionEvent(
        id=occurrence.id,
        session_id=occurrence.session_id,
        timestamp=occurrence.timestamp,
        handled=occurrence.handled,
        attributes=occurrence.attributes,
    )


# =============================================================================
# Journey output
# =============================================================================


@dataclass
class NodeIssue:
    """A group attached to a journey node."""
    id: str
    title: str
    count: int

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "count": self.count}


@dataclass
class JourneyNode:
    id: str  # Location name
    crashes: list[NodeIssue] = field(default_factory=list)
    anrs: list[NodeIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issues": {
                "crashes": [i.to_dict() for i in self.crashes],
                "anrs": [i.to_dict() for i in self.anrs],
            },
        }


@dataclass
class JourneyLink:
    source: str
    target: str
    value: int  # Distinct sessions making this transition

    def to_dict(self) -> dict:
        return {"source": self.source, "target": self.target, "value": self.value}


@dataclass
class Journey:
    nodes: list[JourneyNode] = field(default_factory=list)
    links: list[JourneyLink] = field(default_factory=list)
    total_issues: int = 0

    def to_dict(self) -> dict:
        return {
            "totalIssues": self.total_issues,
            "nodes": [n.to_dict() for n in self.nodes],
            "links": [link.to_dict() for link in self.links],
        }
