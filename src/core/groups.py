"""
Group Store - Fingerprint to group mapping

Assigns every occurrence to the one group that owns its fingerprint,
creating the group on first sight. The storage boundary performs a
conditional insert; losing a creation race is handled here by reading
the winner's group and appending to it.
"""

import uuid
from typing import Optional

import structlog

from src.core.fingerprint import Fingerprinter, display_name
from src.core.models import AppFilter, EventIdSet, Group, IssueKind, Occurrence, utcnow
from src.storage.base import GroupConflictError, IssueRepository, StorageUnavailableError

logger = structlog.get_logger()


class GroupStore:
    """
    Maintains fingerprint → group membership through an IssueRepository.

    Example:
        store = GroupStore(repository)
        group_id = await store.add_occurrence(occurrence)
        group = await store.get(group_id)
    """

    def __init__(self, repository: IssueRepository, fingerprinter: Optional[Fingerprinter] = None):
        self.repository = repository
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.log = logger.bind(component="group_store")

    async def upsert(
        self,
        app_id: str,
        kind: IssueKind,
        fingerprint: str,
        occurrence_id: str,
        display_name_hint: str,
    ) -> str:
        """
        Add an occurrence id to the group for ``fingerprint``.

        Creates the group when none exists. Idempotent: appending an id
        that is already a member leaves the group unchanged.

        Returns:
            The group id
        """
        group = await self.repository.find_group(app_id, kind, fingerprint)

        if group is None:
            now = utcnow()
            candidate = Group(
                id=str(uuid.uuid4()),
                app_id=app_id,
                kind=kind,
                fingerprint=fingerprint,
                name=display_name_hint,
                event_ids=EventIdSet([occurrence_id]),
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self.repository.insert_group(candidate)
            except GroupConflictError:
                self.log.debug("Group created concurrently, appending", fingerprint=fingerprint)
                group = await self.repository.find_group(app_id, kind, fingerprint)
                if group is None:
                    raise StorageUnavailableError(
                        f"group for fingerprint {fingerprint!r} missing after insert conflict"
                    )
            else:
                self.log.info("Group created", group_id=created.id, kind=kind.value, name=created.name)
                return created.id

        await self.repository.append_event(group.id, occurrence_id)
        return group.id

    async def add_occurrence(self, occurrence: Occurrence) -> str:
        """Fingerprint an occurrence and upsert it into its group."""
        fingerprint = self.fingerprinter.fingerprint(occurrence)
        return await self.upsert(
            occurrence.app_id,
            occurrence.kind,
            fingerprint,
            occurrence.id,
            display_name(occurrence),
        )

    async def get(self, group_id: str) -> Group:
        return await self.repository.read_group(group_id)

    async def list(
        self,
        app_id: str,
        kind: IssueKind,
        time_range: Optional[AppFilter] = None,
    ) -> list[Group]:
        """Groups ordered by member count descending, then id."""
        groups = await self.repository.list_groups(app_id, kind, time_range)
        return sorted(groups, key=lambda g: (-g.count, g.id))
