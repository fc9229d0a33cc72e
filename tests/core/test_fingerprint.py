"""Tests for fingerprinting and occurrence normalization."""

import pytest


class TestFingerprinter:
    """Tests for Fingerprinter."""

    def test_same_shape_same_fingerprint(self, make_occurrence):
        """Line numbers, messages and files do not change the fingerprint."""
        from src.core.fingerprint import Fingerprinter

        fp = Fingerprinter()
        first = make_occurrence(frames=[("com.example.App", "onCreate", "App.kt")])
        second = make_occurrence(
            frames=[("com.example.App", "onCreate", "Other.kt")],
            exception_type="java.lang.RuntimeException",
        )

        assert first.frames[0].line_number != second.frames[0].line_number
        assert fp.fingerprint(first) == fp.fingerprint(second)

    def test_different_method_different_fingerprint(self, make_occurrence):
        from src.core.fingerprint import Fingerprinter

        fp = Fingerprinter()
        first = make_occurrence(frames=[("com.example.App", "onCreate")])
        second = make_occurrence(frames=[("com.example.App", "onResume")])

        assert fp.fingerprint(first) != fp.fingerprint(second)

    def test_only_top_frames_count(self, make_occurrence):
        """Frames below the configured depth are ignored."""
        from src.core.fingerprint import Fingerprinter

        fp = Fingerprinter(depth=2)
        top = [("a.A", "one"), ("b.B", "two")]
        first = make_occurrence(frames=top + [("c.C", "three")])
        second = make_occurrence(frames=top + [("d.D", "four")])

        assert fp.fingerprint(first) == fp.fingerprint(second)

    def test_empty_frames_unknown(self, make_occurrence):
        from src.core.fingerprint import UNKNOWN_FINGERPRINT, Fingerprinter

        occurrence = make_occurrence(frames=[])
        assert Fingerprinter().fingerprint(occurrence) == UNKNOWN_FINGERPRINT

    def test_symbolless_frames_skipped(self):
        from src.core.fingerprint import Fingerprinter
        from src.core.models import StackFrame

        fp = Fingerprinter()
        with_blank = [StackFrame(file_name="libc.so"), StackFrame("a.A", "run")]
        without_blank = [StackFrame("a.A", "run")]

        assert fp.fingerprint_frames(with_blank) == fp.fingerprint_frames(without_blank)

    def test_fingerprint_is_sha256_hex(self, make_occurrence):
        from src.core.fingerprint import Fingerprinter

        value = Fingerprinter().fingerprint(make_occurrence())
        assert len(value) == 64
        int(value, 16)

    def test_normalize_frames_shapes(self):
        from src.core.fingerprint import Fingerprinter
        from src.core.models import StackFrame

        frames = [StackFrame("a.A", "run", "A.kt", 10), StackFrame("b.B", "call", "B.kt", 20)]
        assert Fingerprinter(depth=1).normalize_frames(frames) == [("a.A", "run")]

    def test_invalid_depth(self):
        from src.core.fingerprint import Fingerprinter

        with pytest.raises(ValueError):
            Fingerprinter(depth=0)


class TestDisplayName:
    """Tests for display_name."""

    def test_type_at_file(self, make_occurrence):
        from src.core.fingerprint import display_name

        occurrence = make_occurrence(
            frames=[("com.example.App", "onCreate", "App.kt")],
            exception_type="java.lang.NullPointerException",
        )
        assert display_name(occurrence) == "java.lang.NullPointerException@App.kt"

    def test_anr_default_type(self, make_occurrence):
        from src.core.fingerprint import ANR_EXCEPTION_TYPE, display_name
        from src.core.models import IssueKind

        occurrence = make_occurrence(kind=IssueKind.ANR, exception_type=None, frames=[])
        assert display_name(occurrence) == ANR_EXCEPTION_TYPE


class TestParseStacktrace:
    """Tests for parse_stacktrace."""

    def test_parses_jvm_frames(self):
        from src.core.fingerprint import parse_stacktrace

        text = (
            "java.lang.IllegalStateException: boom\n"
            "\tat com.example.MainActivity.onCreate(MainActivity.kt:42)\n"
            "\tat android.app.Activity.performCreate(Native Method)\n"
        )
        frames = parse_stacktrace(text)

        assert len(frames) == 2
        assert frames[0].class_name == "com.example.MainActivity"
        assert frames[0].method_name == "onCreate"
        assert frames[0].file_name == "MainActivity.kt"
        assert frames[0].line_number == 42
        assert frames[1].file_name is None

    def test_empty(self):
        from src.core.fingerprint import parse_stacktrace

        assert parse_stacktrace(None) == []
        assert parse_stacktrace("") == []


class TestOccurrenceNormalizer:
    """Tests for OccurrenceNormalizer."""

    def test_normalize_exception(self, sample_payload):
        from src.core.fingerprint import OccurrenceNormalizer
        from src.core.models import IssueKind

        occurrence = OccurrenceNormalizer().normalize("app-1", sample_payload)

        assert occurrence.id == "evt-1"
        assert occurrence.app_id == "app-1"
        assert occurrence.kind == IssueKind.CRASH
        assert occurrence.exception_type == "java.lang.NullPointerException"
        assert occurrence.frames[0].line_number == 42
        assert occurrence.attributes.app_version == "1.0.0"
        assert occurrence.attributes.country_code == "IN"
        assert occurrence.handled is False

    def test_normalize_anr(self, sample_payload):
        from src.core.fingerprint import OccurrenceNormalizer
        from src.core.models import IssueKind

        sample_payload["type"] = "anr"
        sample_payload["anr"] = sample_payload.pop("exception")

        occurrence = OccurrenceNormalizer().normalize("app-1", sample_payload)
        assert occurrence.kind == IssueKind.ANR

    def test_normalize_stacktrace_string(self, sample_payload):
        from src.core.fingerprint import OccurrenceNormalizer

        exc = sample_payload["exception"]["exceptions"][0]
        del exc["frames"]
        exc["stacktrace"] = "\tat com.example.App.onCreate(App.kt:7)"

        occurrence = OccurrenceNormalizer().normalize("app-1", sample_payload)
        assert occurrence.frames[0].method_name == "onCreate"
        assert occurrence.frames[0].line_number == 7

    def test_missing_session_rejected(self, sample_payload):
        from src.core.fingerprint import InvalidPayloadError, OccurrenceNormalizer

        del sample_payload["session_id"]
        with pytest.raises(InvalidPayloadError):
            OccurrenceNormalizer().normalize("app-1", sample_payload)

    def test_unknown_type_rejected(self, sample_payload):
        from src.core.fingerprint import InvalidPayloadError, OccurrenceNormalizer

        sample_payload["type"] = "gesture_click"
        with pytest.raises(InvalidPayloadError):
            OccurrenceNormalizer().normalize("app-1", sample_payload)

    def test_bad_timestamp_rejected(self, sample_payload):
        from src.core.fingerprint import InvalidPayloadError, OccurrenceNormalizer

        sample_payload["timestamp"] = "yesterday"
        with pytest.raises(InvalidPayloadError):
            OccurrenceNormalizer().normalize("app-1", sample_payload)
