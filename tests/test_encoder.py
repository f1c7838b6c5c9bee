"""Tests for the encode() function."""

import unittest

from debugbunny.encoder import encode
from debugbunny.errors import EncodingError
from debugbunny.models import FAILURE, SUCCESS, TIMEOUT, ScrapeOutcome


def _outcome(**overrides) -> ScrapeOutcome:
    """Helper to build a ScrapeOutcome with sensible defaults."""
    defaults = dict(
        target_id="t1",
        kind="http",
        started_at=1700000000.25,
        duration_ms=42,
        outcome=SUCCESS,
        payload=b"\x00binary\xff",
        meta={"status": 200},
        error=None,
    )
    defaults.update(overrides)
    return ScrapeOutcome(**defaults)


class TestEncode(unittest.TestCase):
    """Verify outcomes map onto log records without touching payloads."""

    def test_success_keeps_payload_bytes(self):
        """Payload bytes pass through unchanged, whatever their content."""
        record = encode(_outcome())
        self.assertEqual(record.payload, b"\x00binary\xff")
        self.assertEqual(record.outcome, SUCCESS)
        self.assertEqual(record.meta, {"status": 200})
        self.assertIsNone(record.error)

    def test_timestamp_is_iso8601_utc(self):
        """The start time is rendered as ISO-8601 in UTC with milliseconds."""
        record = encode(_outcome())
        self.assertEqual(record.timestamp, "2023-11-14T22:13:20.250+00:00")

    def test_timeout_has_no_payload(self):
        """Timeouts carry the error description and no payload."""
        record = encode(_outcome(outcome=TIMEOUT, payload=None, error="deadline of 0.050s exceeded"))
        self.assertIsNone(record.payload)
        self.assertEqual(record.error, "deadline of 0.050s exceeded")

    def test_failure_without_description_gets_one(self):
        """A failure always carries some error text."""
        record = encode(_outcome(outcome=FAILURE, payload=b"ignored", error=None))
        self.assertIsNone(record.payload)
        self.assertEqual(record.error, FAILURE)

    def test_unknown_outcome_raises(self):
        """An outcome kind outside success/timeout/failure cannot be encoded."""
        with self.assertRaises(EncodingError):
            encode(_outcome(outcome="maybe"))

    def test_success_without_payload_raises(self):
        """A success must carry bytes."""
        with self.assertRaises(EncodingError):
            encode(_outcome(payload=None))

    def test_target_configuration_is_copied(self):
        """The record names the target configuration the outcome came from."""
        target = {"interval": 1.0, "timeout": 0.5, "action": {"kind": "http", "method": "GET", "url": "http://x/"}}
        record = encode(_outcome(target=target))
        self.assertEqual(record.target, target)

    def test_empty_payload_is_valid(self):
        """An empty body is still a successful scrape."""
        record = encode(_outcome(payload=b""))
        self.assertEqual(record.payload, b"")


if __name__ == "__main__":
    unittest.main()
