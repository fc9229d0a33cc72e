"""Issue Groups and Journey API.

Read endpoints for the crash/ANR dashboard plus occurrence ingestion:

- crashGroups / anrGroups: ranked, filtered, cursor-paginated groups
- crashGroups/{id}/crashes / anrGroups/{id}/anrs: a group's occurrences
- journey: navigation graph with crash/ANR groups on each screen
- occurrences: ingest one raw SDK occurrence

All list filters are comma separated query parameters.
"""

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from src.core.fingerprint import InvalidPayloadError
from src.core.models import AppFilter, IssueKind, parse_datetime
from src.core.service import FailureKind, IssueService, IssueServiceError
from src.storage import get_repository
from src.utils.logging import LogContext

logger = structlog.get_logger()
router = APIRouter(prefix="/apps", tags=["Issues"])


# =============================================================================
# Models
# =============================================================================


class IngestResponse(BaseModel):
    """Result of ingesting one occurrence."""

    id: str = Field(..., description="Occurrence ID")
    type: str = Field(..., description="crash or anr")
    group_id: Optional[str] = Field(None, description="Group the occurrence joined; null for handled exceptions")


# =============================================================================
# Dependencies
# =============================================================================


def get_issue_service() -> IssueService:
    """Issue service over the configured repository."""
    return IssueService(get_repository())


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_time(value: Optional[str], name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"`{name}` is not a valid ISO 8601 timestamp") from e


def parse_versions(versions: Optional[str], version_codes: Optional[str]) -> frozenset:
    """Pair ``versions`` with ``version_codes`` by position.

    Without codes every build of a version matches.
    """
    names = _split(versions)
    codes = _split(version_codes)
    if codes and len(codes) != len(names):
        raise HTTPException(
            status_code=400,
            detail="`versions` and `version_codes` must have the same number of entries",
        )
    if not codes:
        return frozenset((name, None) for name in names)
    return frozenset(zip(names, codes))


def get_app_filter(
    app_id: str,
    from_time: Optional[str] = Query(None, alias="from", description="ISO 8601 start (inclusive)"),
    to_time: Optional[str] = Query(None, alias="to", description="ISO 8601 end (inclusive)"),
    versions: Optional[str] = Query(None, description="App versions"),
    version_codes: Optional[str] = Query(None, description="App builds, paired with versions"),
    os_names: Optional[str] = Query(None),
    countries: Optional[str] = Query(None),
    device_manufacturers: Optional[str] = Query(None),
    device_names: Optional[str] = Query(None),
    locales: Optional[str] = Query(None),
    network_types: Optional[str] = Query(None),
    network_providers: Optional[str] = Query(None),
    network_generations: Optional[str] = Query(None),
    key_id: Optional[str] = Query(None, description="Cursor: id of the last item seen"),
    key_timestamp: Optional[str] = Query(None, description="Cursor: timestamp of the last occurrence seen"),
    key_count: Optional[int] = Query(None, ge=0, description="Cursor: count of the last group seen"),
    limit: Optional[int] = Query(None, description="Page size; negative pages backwards"),
) -> AppFilter:
    """Build an AppFilter from query parameters."""
    start = _parse_time(from_time, "from")
    end = _parse_time(to_time, "to")
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="`from` and `to` must be given together")
    if start is not None and start > end:
        raise HTTPException(status_code=400, detail="`from` must not be after `to`")
    if limit == 0:
        raise HTTPException(status_code=400, detail="`limit` cannot be zero")
    if key_timestamp is not None and key_id is None:
        raise HTTPException(status_code=400, detail="`key_timestamp` requires `key_id`")

    return AppFilter(
        app_id=app_id,
        from_time=start,
        to_time=end,
        versions=parse_versions(versions, version_codes),
        os_names=frozenset(_split(os_names)),
        countries=frozenset(_split(countries)),
        device_manufacturers=frozenset(_split(device_manufacturers)),
        device_names=frozenset(_split(device_names)),
        locales=frozenset(_split(locales)),
        network_types=frozenset(_split(network_types)),
        network_providers=frozenset(_split(network_providers)),
        network_generations=frozenset(_split(network_generations)),
        key_id=key_id,
        key_timestamp=_parse_time(key_timestamp, "key_timestamp"),
        key_count=key_count,
        limit=limit,
    )


def get_occurrence_filter(app_filter: AppFilter = Depends(get_app_filter)) -> AppFilter:
    """AppFilter for occurrence listings, whose cursor is (key_timestamp, key_id)."""
    if app_filter.key_id is not None and app_filter.key_timestamp is None:
        raise HTTPException(status_code=400, detail="`key_id` requires `key_timestamp`")
    return app_filter


def _raise_for(e: IssueServiceError, message: str):
    if e.kind == FailureKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail=str(e)) from e
    logger.exception(message, error=str(e))
    raise HTTPException(status_code=502, detail=str(e)) from e


# =============================================================================
# Groups
# =============================================================================


@router.get("/{app_id}/crashGroups")
async def list_crash_groups(
    app_id: str,
    app_filter: AppFilter = Depends(get_app_filter),
    service: IssueService = Depends(get_issue_service),
):
    """Crash groups ranked by matching occurrences."""
    try:
        with LogContext(app_id=app_id, kind=IssueKind.CRASH.value):
            return await service.get_groups(app_id, IssueKind.CRASH, app_filter)
    except IssueServiceError as e:
        _raise_for(e, "Failed to list crash groups")


@router.get("/{app_id}/anrGroups")
async def list_anr_groups(
    app_id: str,
    app_filter: AppFilter = Depends(get_app_filter),
    service: IssueService = Depends(get_issue_service),
):
    """ANR groups ranked by matching occurrences."""
    try:
        with LogContext(app_id=app_id, kind=IssueKind.ANR.value):
            return await service.get_groups(app_id, IssueKind.ANR, app_filter)
    except IssueServiceError as e:
        _raise_for(e, "Failed to list ANR groups")


@router.get("/{app_id}/crashGroups/{group_id}/crashes")
async def list_group_crashes(
    app_id: str,
    group_id: str,
    app_filter: AppFilter = Depends(get_occurrence_filter),
    service: IssueService = Depends(get_issue_service),
):
    try:
        with LogContext(app_id=app_id, group_id=group_id):
            return await service.get_group_occurrences(app_id, group_id, app_filter, kind=IssueKind.CRASH)
    except IssueServiceError as e:
        _raise_for(e, "Failed to list group crashes")


@router.get("/{app_id}/anrGroups/{group_id}/anrs")
async def list_group_anrs(
    app_id: str,
    group_id: str,
    app_filter: AppFilter = Depends(get_occurrence_filter),
    service: IssueService = Depends(get_issue_service),
):
    try:
        with LogContext(app_id=app_id, group_id=group_id):
            return await service.get_group_occurrences(app_id, group_id, app_filter, kind=IssueKind.ANR)
    except IssueServiceError as e:
        _raise_for(e, "Failed to list group ANRs")


# =============================================================================
# Journey
# =============================================================================


@router.get("/{app_id}/journey")
async def get_journey(
    app_id: str,
    bigraph: int = Query(0, ge=0, le=1, description="1 keeps both directions of two-way transitions"),
    group_id: Optional[str] = Query(None, description="Only sessions that hit this group"),
    app_filter: AppFilter = Depends(get_app_filter),
    service: IssueService = Depends(get_issue_service),
):
    """Navigation journey with the crash and ANR groups seen on each screen."""
    try:
        with LogContext(app_id=app_id, group_id=group_id):
            return await service.get_journey(
                app_id,
                app_filter,
                bidirectional=bool(bigraph),
                group_id=group_id,
            )
    except IssueServiceError as e:
        _raise_for(e, "Failed to build journey")


# =============================================================================
# Ingestion
# =============================================================================


@router.post("/{app_id}/occurrences", response_model=IngestResponse, status_code=201)
async def ingest_occurrence(
    app_id: str,
    payload: dict,
    service: IssueService = Depends(get_issue_service),
):
    """Ingest one raw exception or ANR payload."""
    try:
        occurrence = service.normalizer.normalize(app_id, payload)
    except InvalidPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        with LogContext(app_id=app_id, occurrence_id=occurrence.id):
            group_id = await service.ingest_occurrence(occurrence)
    except IssueServiceError as e:
        _raise_for(e, "Failed to ingest occurrence")

    return IngestResponse(id=occurrence.id, type=occurrence.kind.value, group_id=group_id)
