"""
Fingerprinting - Stable Identity for Crashes and ANRs

Converts raw SDK occurrence payloads into Occurrence records and derives
the fingerprint used to cluster them into groups:

    Raw SDK payload → Occurrence → Fingerprint → Group upsert

A fingerprint depends only on the shape of the top stack frames
(declaring type + method). Line numbers, file paths, thread names and
messages are left out so that rebuilds and varying inputs do not split
one problem into many groups.
"""

import hashlib
import re
import uuid
from collections.abc import Iterable, Sequence
from typing import Any, Optional

import structlog

from src.core.models import AppAttributes, IssueKind, Occurrence, StackFrame, parse_datetime

logger = structlog.get_logger()

UNKNOWN_FINGERPRINT = "unknown"
FRAME_DELIMITER = "\n"
DEFAULT_FRAME_DEPTH = 5

ANR_EXCEPTION_TYPE = "sh.measure.android.anr.AnrError"

# at com.example.app.MainActivity.onCreate(MainActivity.kt:42)
_JVM_FRAME = re.compile(
    r"^\s*at\s+(?P<symbol>[^\s(]+)\((?P<location>[^)]*)\)\s*$"
)


class InvalidPayloadError(ValueError):
    """Raised when an occurrence payload cannot be normalized."""


def normalize_frame(frame: StackFrame) -> tuple[str, str]:
    """Reduce a frame to its (declaring type, method) shape."""
    return (frame.class_name or "", frame.method_name or "")


class Fingerprinter:
    """
    Produces stable fingerprints from occurrences.

    Pure: the same normalized top frames always give the same fingerprint.
    """

    def __init__(self, depth: int = DEFAULT_FRAME_DEPTH):
        if depth < 1:
            raise ValueError("fingerprint depth must be at least 1")
        self.depth = depth

    def normalize_frames(self, frames: Sequence[StackFrame]) -> list[tuple[str, str]]:
        """Normalized top-N frames, skipping frames with no symbol at all."""
        normalized = [normalize_frame(f) for f in frames]
        return [shape for shape in normalized if any(shape)][: self.depth]

    def fingerprint_frames(self, frames: Sequence[StackFrame]) -> str:
        shapes = self.normalize_frames(frames)
        if not shapes:
            return UNKNOWN_FINGERPRINT

        combined = FRAME_DELIMITER.join(f"{cls}.{method}" for cls, method in shapes)
        return hashlib.sha256(combined.encode("utf-8")).hexdigest()

    def fingerprint(self, occurrence: Occurrence) -> str:
        """Fingerprint an occurrence from its stack frames."""
        return self.fingerprint_frames(occurrence.frames)


def display_name(occurrence: Occurrence) -> str:
    """Human readable group name: exception type at the top frame's file."""
    error_type = occurrence.exception_type
    if not error_type:
        error_type = ANR_EXCEPTION_TYPE if occurrence.kind == IssueKind.ANR else "Unknown"

    top = next((f for f in occurrence.frames if f.in_app and f.file_name), None)
    if top is None:
        top = next((f for f in occurrence.frames if f.file_name), None)
    if top is None:
        return error_type
    return f"{error_type}@{top.file_name}"


def parse_stacktrace(text: Optional[str]) -> list[StackFrame]:
    """Parse a JVM style stack trace into frames, top of stack first."""
    if not text:
        return []

    frames = []
    for line in text.splitlines():
        match = _JVM_FRAME.match(line)
        if not match:
            continue

        symbol = match.group("symbol")
        class_name, _, method_name = symbol.rpartition(".")
        file_name, line_number = _split_location(match.group("location"))

        frames.append(StackFrame(
            class_name=class_name or None,
            method_name=method_name or None,
            file_name=file_name,
            line_number=line_number,
        ))

    return frames


def _split_location(location: str) -> tuple[Optional[str], Optional[int]]:
    """Split 'File.kt:42' into ('File.kt', 42). 'Native Method' has no file."""
    if not location or location in ("Native Method", "Unknown Source"):
        return None, None
    file_name, _, line = location.partition(":")
    return file_name or None, int(line) if line.isdigit() else None


class OccurrenceNormalizer:
    """
    Normalizes raw SDK payloads into Occurrence records.

    Accepts the mobile SDK's event shape:

        {
            "id": "...", "session_id": "...", "timestamp": "...",
            "type": "exception" | "anr",
            "exception": {"exceptions": [{"type", "message", "frames": [...]}],
                          "handled": false, "foreground": true},
            "thread_name": "main",
            "attribute": {"app_version": "1.0", ...}
        }

    Frames may instead arrive as a raw ``stacktrace`` string.
    """

    def __init__(self):
        self.log = logger.bind(component="occurrence_normalizer")

    def normalize(self, app_id: str, raw: dict) -> Occurrence:
        """
        Normalize one raw payload.

        Args:
            app_id: Owning app
            raw: The payload as received from the SDK

        Returns:
            Occurrence ready for fingerprinting

        Raises:
            InvalidPayloadError: If required fields are missing or malformed
        """
        try:
            kind = self._parse_kind(raw.get("type"))
            body = raw.get("anr" if kind == IssueKind.ANR else "exception") or {}
            exceptions = body.get("exceptions") or []
            primary = exceptions[0] if exceptions else {}

            timestamp = parse_datetime(raw.get("timestamp"))
            session_id = raw.get("session_id")
            if timestamp is None or not session_id:
                raise InvalidPayloadError("occurrence requires session_id and timestamp")

            occurrence = Occurrence(
                id=str(raw.get("id") or uuid.uuid4()),
                app_id=app_id,
                session_id=str(session_id),
                timestamp=timestamp,
                kind=kind,
                frames=tuple(self._parse_frames(primary, body)),
                exception_type=primary.get("type"),
                message=primary.get("message"),
                thread_name=raw.get("thread_name"),
                handled=bool(body.get("handled", False)) if kind == IssueKind.CRASH else False,
                foreground=bool(body.get("foreground", True)),
                attributes=AppAttributes.from_dict(raw.get("attribute") or {}),
            )
        except InvalidPayloadError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise InvalidPayloadError(f"malformed occurrence payload: {e}") from e

        self.log.debug("Occurrence normalized", occurrence_id=occurrence.id, kind=kind.value)
        return occurrence

    def _parse_kind(self, value: Any) -> IssueKind:
        if value in ("anr", IssueKind.ANR):
            return IssueKind.ANR
        if value in ("exception", "crash", IssueKind.CRASH, None):
            return IssueKind.CRASH
        raise InvalidPayloadError(f"unsupported occurrence type {value!r}")

    def _parse_frames(self, primary: dict, body: dict) -> Iterable[StackFrame]:
        raw_frames = primary.get("frames")
        if raw_frames:
            return [
                StackFrame(
                    class_name=frame.get("class_name"),
                    method_name=frame.get("method_name"),
                    file_name=frame.get("file_name"),
                    line_number=frame.get("line_num", frame.get("line_number")),
                    in_app=frame.get("in_app", True),
                )
                for frame in raw_frames
            ]
        return parse_stacktrace(primary.get("stacktrace") or body.get("stacktrace"))
