"""PostgREST (Supabase REST) issue repository.

Tables and the append function are defined in ``schema.sql``. The unique
constraint on ``issue_groups (app_id, type, fingerprint)`` is what makes
group creation race free: a losing insert comes back as HTTP 409 and is
reported as ``GroupConflictError``.
"""

from collections.abc import Iterable, Iterator, Sequence
from typing import Any, Optional

import httpx
import structlog

from src.config import get_settings
from src.core.models import (
    ActivityLifecycleEvent,
    AppAttributes,
    AppFilter,
    FragmentLifecycleEvent,
    Group,
    IssueKind,
    JourneyEvent,
    LifecycleActivityType,
    LifecycleFragmentType,
    Occurrence,
    StackFrame,
    journey_event_from_occurrence,
    parse_datetime,
)
from src.storage.base import (
    GroupConflictError,
    IssueRepository,
    RecordNotFoundError,
    StorageUnavailableError,
)

logger = structlog.get_logger()

OCCURRENCES_TABLE = "occurrences"
LIFECYCLE_TABLE = "lifecycle_events"
GROUPS_TABLE = "issue_groups"
APPEND_EVENT_FUNCTION = "append_group_event"

# Keeps id lists inside URL length limits
ID_CHUNK_SIZE = 200

ATTRIBUTE_COLUMNS = {
    "os_names": "os_name",
    "countries": "country_code",
    "device_manufacturers": "device_manufacturer",
    "device_names": "device_name",
    "locales": "device_locale",
    "network_types": "network_type",
    "network_providers": "network_provider",
    "network_generations": "network_generation",
}


class PostgrestError(StorageUnavailableError):
    """A PostgREST request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PostgrestClient:
    """Client for PostgREST REST API operations."""

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.url = url or settings.postgrest_url
        self.service_key = service_key or (
            settings.postgrest_service_key.get_secret_value()
            if settings.postgrest_service_key
            else None
        )
        self.timeout = timeout or settings.storage_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.service_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Sequence[tuple[str, str]]] = None,
        body: Optional[Any] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make a request to the PostgREST API.

        Returns:
            Decoded JSON body (None for empty responses)

        Raises:
            PostgrestError: On transport failures and non-2xx responses
        """
        if not self.is_configured:
            raise PostgrestError("PostgREST not configured")

        client = await self._get_client()

        request_headers = {"Prefer": "return=representation"}
        if headers:
            request_headers.update(headers)

        try:
            response = await client.request(
                method=method,
                url=path,
                params=list(params) if params else None,
                json=body,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            logger.warning("PostgREST request error", path=path, error=str(e))
            raise PostgrestError(f"request to {path} failed: {e}") from e

        if not response.is_success:
            logger.warning(
                "PostgREST request failed",
                path=path,
                status=response.status_code,
                error=response.text,
            )
            raise PostgrestError(
                f"request to {path} failed with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        return response.json() if response.text else None

    # Convenience methods
    async def select(self, table: str, params: Sequence[tuple[str, str]]) -> list[dict]:
        """Select rows; ``params`` are PostgREST query parameters."""
        return await self.request(f"/{table}", params=[("select", "*"), *params]) or []

    async def insert(self, table: str, row: dict) -> list[dict]:
        return await self.request(f"/{table}", method="POST", body=row) or []

    async def rpc(self, function_name: str, params: dict) -> Any:
        """Call a PostgreSQL function via PostgREST RPC."""
        return await self.request(f"/rpc/{function_name}", method="POST", body=params)


# =============================================================================
# Query building
# =============================================================================


def quote(value: Any) -> str:
    """Quote a value for PostgREST filter syntax."""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def in_list(values: Iterable[Any]) -> str:
    return "(" + ",".join(quote(v) for v in sorted(values)) + ")"


def chunked(values: Iterable[str], size: Optional[int] = None) -> Iterator[list[str]]:
    size = size or ID_CHUNK_SIZE
    batch: list[str] = []
    for value in values:
        batch.append(value)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def _logic_params(trees: Sequence[str]) -> list[tuple[str, str]]:
    """Combine ``or(...)`` trees; more than one must be wrapped in an ``and``."""
    if not trees:
        return []
    if len(trees) == 1:
        return [("or", trees[0].removeprefix("or"))]
    return [("and", "(" + ",".join(trees) + ")")]


def filter_params(app_filter: AppFilter, extra_trees: Sequence[str] = ()) -> list[tuple[str, str]]:
    """Translate an AppFilter into PostgREST query parameters."""
    params = [("app_id", f"eq.{app_filter.app_id}")]

    if app_filter.from_time is not None:
        params.append(("timestamp", f"gte.{app_filter.from_time.isoformat()}"))
    if app_filter.to_time is not None:
        params.append(("timestamp", f"lte.{app_filter.to_time.isoformat()}"))

    for field_name, column in ATTRIBUTE_COLUMNS.items():
        values = getattr(app_filter, field_name)
        if values:
            params.append((column, f"in.{in_list(values)}"))

    trees = list(extra_trees)
    if app_filter.versions:
        pairs = []
        for version, build in sorted(app_filter.versions, key=lambda p: (p[0], p[1] or "")):
            if build is None:
                pairs.append(f"app_version.eq.{quote(version)}")
            else:
                pairs.append(f"and(app_version.eq.{quote(version)},app_build.eq.{quote(build)})")
        trees.append("or(" + ",".join(pairs) + ")")

    return params + _logic_params(trees)


# =============================================================================
# Row mapping
# =============================================================================


def occurrence_to_row(occurrence: Occurrence) -> dict:
    row = {
        "id": occurrence.id,
        "app_id": occurrence.app_id,
        "session_id": occurrence.session_id,
        "timestamp": occurrence.timestamp.isoformat(),
        "type": occurrence.kind.value,
        "frames": [f.to_dict() for f in occurrence.frames],
        "exception_type": occurrence.exception_type,
        "message": occurrence.message,
        "thread_name": occurrence.thread_name,
        "handled": occurrence.handled,
        "foreground": occurrence.foreground,
    }
    row.update(occurrence.attributes.to_dict())
    return row


def occurrence_from_row(row: dict) -> Occurrence:
    return Occurrence(
        id=str(row["id"]),
        app_id=str(row["app_id"]),
        session_id=str(row["session_id"]),
        timestamp=parse_datetime(row["timestamp"]),
        kind=IssueKind(row["type"]),
        frames=tuple(StackFrame.from_dict(f) for f in row.get("frames") or []),
        exception_type=row.get("exception_type"),
        message=row.get("message"),
        thread_name=row.get("thread_name"),
        handled=bool(row.get("handled")),
        foreground=bool(row.get("foreground", True)),
        attributes=AppAttributes.from_dict(row),
    )


def lifecycle_from_row(row: dict) -> JourneyEvent:
    common = {
        "id": str(row["id"]),
        "session_id": str(row["session_id"]),
        "timestamp": parse_datetime(row["timestamp"]),
        "class_name": row["class_name"],
        "attributes": AppAttributes.from_dict(row),
    }
    if row["type"] == "lifecycle_fragment":
        return FragmentLifecycleEvent(
            type=LifecycleFragmentType(row["lifecycle_type"]),
            parent_activity=row.get("parent_activity"),
            **common,
        )
    return ActivityLifecycleEvent(type=LifecycleActivityType(row["lifecycle_type"]), **common)


def group_to_row(group: Group) -> dict:
    row = group.to_dict(include_event_ids=True)
    del row["count"]  # Derived from event_ids
    return row


ENTERING_LIFECYCLE_TREE = (
    "or(and(type.eq.lifecycle_activity,lifecycle_type.in.(created,resumed)),"
    "and(type.eq.lifecycle_fragment,lifecycle_type.in.(attached,resumed)))"
)
UNHANDLED_ISSUE_TREE = "or(type.eq.anr,handled.is.false)"


class PostgrestIssueRepository(IssueRepository):
    """
    Repository backed by a PostgREST API.

    Example:
        repo = PostgrestIssueRepository(PostgrestClient(url, key))
        group = await repo.read_group(group_id)
    """

    def __init__(self, client: Optional[PostgrestClient] = None):
        self.client = client or PostgrestClient()
        self.log = logger.bind(component="postgrest_repository")

    async def close(self) -> None:
        await self.client.close()

    # -------------------------------------------------------------------------
    # Occurrences
    # -------------------------------------------------------------------------

    async def insert_occurrence(self, occurrence: Occurrence) -> None:
        await self.client.request(
            f"/{OCCURRENCES_TABLE}",
            method="POST",
            params=[("on_conflict", "id")],
            body=occurrence_to_row(occurrence),
            headers={"Prefer": "return=minimal,resolution=ignore-duplicates"},
        )

    async def query_occurrences(
        self,
        app_filter: AppFilter,
        event_ids: Optional[Iterable[str]] = None,
        kind: Optional[IssueKind] = None,
    ) -> list[Occurrence]:
        params = filter_params(app_filter)
        if kind is not None:
            params.append(("type", f"eq.{kind.value}"))
        params.append(("order", "timestamp.asc,id.asc"))

        if event_ids is None:
            rows = await self.client.select(OCCURRENCES_TABLE, params)
        else:
            rows = []
            for batch in chunked(dict.fromkeys(event_ids)):
                rows.extend(await self.client.select(
                    OCCURRENCES_TABLE, params + [("id", f"in.{in_list(batch)}")]
                ))

        occurrences = [occurrence_from_row(row) for row in rows]
        occurrences.sort(key=lambda o: (o.timestamp, o.id))
        return occurrences

    async def filter_event_ids(self, app_filter: AppFilter, event_ids: Iterable[str]) -> set[str]:
        params = filter_params(app_filter)
        matched: set[str] = set()
        for batch in chunked(dict.fromkeys(event_ids)):
            rows = await self.client.request(
                f"/{OCCURRENCES_TABLE}",
                params=[("select", "id"), *params, ("id", f"in.{in_list(batch)}")],
            ) or []
            matched.update(str(row["id"]) for row in rows)
        return matched

    async def query_journey_events(self, app_filter: AppFilter) -> list[JourneyEvent]:
        order = [("order", "timestamp.asc,id.asc")]

        lifecycle_rows = await self.client.select(
            LIFECYCLE_TABLE, filter_params(app_filter, [ENTERING_LIFECYCLE_TREE]) + order
        )
        issue_rows = await self.client.select(
            OCCURRENCES_TABLE, filter_params(app_filter, [UNHANDLED_ISSUE_TREE]) + order
        )

        events = [lifecycle_from_row(row) for row in lifecycle_rows]
        events.extend(journey_event_from_occurrence(occurrence_from_row(row)) for row in issue_rows)
        events.sort(key=lambda e: (e.timestamp, e.id))
        return events

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def find_group(self, app_id: str, kind: IssueKind, fingerprint: str) -> Optional[Group]:
        rows = await self.client.select(GROUPS_TABLE, [
            ("app_id", f"eq.{app_id}"),
            ("type", f"eq.{kind.value}"),
            ("fingerprint", f"eq.{fingerprint}"),
            ("limit", "1"),
        ])
        return Group.from_dict(rows[0]) if rows else None

    async def insert_group(self, group: Group) -> Group:
        try:
            rows = await self.client.insert(GROUPS_TABLE, group_to_row(group))
        except PostgrestError as e:
            if e.status_code == 409:
                raise GroupConflictError(group.app_id, group.kind, group.fingerprint) from e
            raise
        return Group.from_dict(rows[0]) if rows else group.copy()

    async def append_event(self, group_id: str, event_id: str) -> Group:
        rows = await self.client.rpc(APPEND_EVENT_FUNCTION, {"p_group_id": group_id, "p_event_id": event_id})
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            raise RecordNotFoundError(f"group {group_id} not found")
        return Group.from_dict(rows[0])

    async def read_group(self, group_id: str) -> Group:
        rows = await self.client.select(GROUPS_TABLE, [("id", f"eq.{group_id}"), ("limit", "1")])
        if not rows:
            raise RecordNotFoundError(f"group {group_id} not found")
        return Group.from_dict(rows[0])

    async def list_groups(
        self,
        app_id: str,
        kind: IssueKind,
        app_filter: Optional[AppFilter] = None,
    ) -> list[Group]:
        params = [("app_id", f"eq.{app_id}"), ("type", f"eq.{kind.value}")]
        if app_filter is not None and app_filter.has_time_range():
            params.append(("created_at", f"lte.{app_filter.to_time.isoformat()}"))
            params.append(("updated_at", f"gte.{app_filter.from_time.isoformat()}"))

        groups = [Group.from_dict(row) for row in await self.client.select(GROUPS_TABLE, params)]
        groups.sort(key=lambda g: (-g.count, g.id))
        return groups

    async def groups_containing(self, app_id: str, kind: IssueKind, event_ids: Iterable[str]) -> list[Group]:
        found: dict[str, Group] = {}
        for batch in chunked(dict.fromkeys(event_ids)):
            rows = await self.client.select(GROUPS_TABLE, [
                ("app_id", f"eq.{app_id}"),
                ("type", f"eq.{kind.value}"),
                ("event_ids", "ov.{" + ",".join(quote(i) for i in batch) + "}"),
            ])
            for row in rows:
                group = Group.from_dict(row)
                found.setdefault(group.id, group)
        return list(found.values())
