"""
Tests for phone canonicalization, timestamps and webhook signatures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from wa_inbox.utils import (
    canonicalize_phone,
    compute_signature,
    epoch_to_ts,
    format_ts,
    verify_signature,
)

SECRET = "app-secret"


class TestCanonicalizePhone:
    """Test the canonical store key for phone numbers."""

    @pytest.mark.parametrize("raw", ["15551234567", "+15551234567", " +1 555 123 4567 "])
    def test_equivalent_forms_share_one_key(self, raw):
        assert canonicalize_phone(raw) == "+15551234567"

    def test_percent_sequences_kept_verbatim(self):
        assert canonicalize_phone("%2B15551234567") == "+%2B15551234567"

    def test_idempotent(self):
        once = canonicalize_phone("44 20 7946 0958")
        assert canonicalize_phone(once) == once

    def test_empty(self):
        assert canonicalize_phone("") == ""
        assert canonicalize_phone(None) == ""


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        dt = datetime(2024, 3, 5, 7, 8, 9, 120000, tzinfo=timezone.utc)
        assert format_ts(dt) == "2024-03-05T07:08:09.120Z"

    def test_format_converts_offsets_to_utc(self):
        dt = datetime(2024, 3, 5, 9, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_ts(dt) == "2024-03-05T07:00:00.000Z"

    def test_lexicographic_order_matches_time_order(self):
        earlier = format_ts(datetime(2024, 1, 9, 23, 59, 59, tzinfo=timezone.utc))
        later = format_ts(datetime(2024, 1, 10, 0, 0, 0, tzinfo=timezone.utc))
        assert earlier < later

    @pytest.mark.parametrize("value", ["1700000000", 1700000000, "1700000000.9"])
    def test_epoch_seconds(self, value):
        assert epoch_to_ts(value) == "2023-11-14T22:13:20.000Z"

    @pytest.mark.parametrize("value", [None, "", "soon", True, {"s": 1}])
    def test_unparseable_epoch(self, value):
        assert epoch_to_ts(value) is None


class TestSignature:
    """Test x-hub-signature-256 verification over raw bytes."""

    def test_valid_signature(self):
        body = b'{"object":"whatsapp_business_account"}'
        assert verify_signature(body, compute_signature(body, SECRET), SECRET)

    def test_signature_format(self):
        signature = compute_signature(b"{}", SECRET)
        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    def test_single_byte_change_rejected(self):
        body = b'{"text":"hello"}'
        signature = compute_signature(body, SECRET)
        assert not verify_signature(b'{"text":"hellp"}', signature, SECRET)

    def test_wrong_secret_rejected(self):
        body = b"{}"
        assert not verify_signature(body, compute_signature(body, "other"), SECRET)

    def test_bare_hex_rejected(self):
        body = b"{}"
        bare = compute_signature(body, SECRET).removeprefix("sha256=")
        assert not verify_signature(body, bare, SECRET)

    def test_empty_secret_never_verifies(self):
        body = b"{}"
        assert not verify_signature(body, compute_signature(body, ""), "")

    def test_signature_covers_utf8_bytes(self):
        """Signature is computed over the exact bytes, emoji included."""
        body = '{"text":"héllo 👋"}'.encode("utf-8")
        assert verify_signature(body, compute_signature(body, SECRET), SECRET)

    def test_non_ascii_header_does_not_raise(self):
        assert not verify_signature(b"{}", "sha256=ü", SECRET)
