"""Issue grouping and session journey core.

Components live in their own modules (fingerprint, groups, matcher,
ranker, journey, service); only the shared data model is re-exported here.
"""

from .models import (
    AppFilter,
    Group,
    GroupSummary,
    IssueKind,
    Journey,
    Occurrence,
    StackFrame,
)

__all__ = [
    "AppFilter",
    "Group",
    "GroupSummary",
    "IssueKind",
    "Journey",
    "Occurrence",
    "StackFrame",
]
