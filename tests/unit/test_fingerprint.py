"""
Unit tests for audit fingerprints and write policy.
"""

import pytest

from vaultsync.audit.fingerprint import UNSTRINGIFIABLE, build_fingerprint, fnv1a32_hex
from vaultsync.audit.policy import is_client_writable


class TestFnv1a:
    """Reference vectors for 32-bit FNV-1a."""

    @pytest.mark.parametrize(
        "value,expected",
        [("", "811c9dc5"), ("a", "e40c292c"), ("foobar", "bf9cf968")],
    )
    def test_vectors(self, value, expected):
        assert fnv1a32_hex(value) == expected

    def test_none_hashes_as_empty(self):
        assert fnv1a32_hex(None) == fnv1a32_hex("")

    def test_output_is_eight_hex_digits(self):
        h = fnv1a32_hex("héllo ✓")
        assert len(h) == 8
        int(h, 16)


class TestBuildFingerprint:
    """Tests for build_fingerprint."""

    def test_input_format(self):
        fp = build_fingerprint("ITEM_VIEWED", "c1", "u1", {"item_id": "i1"})
        assert fp == fnv1a32_hex('ITEM_VIEWED|c1|u1|{"item_id":"i1"}')

    def test_none_payload_and_actor(self):
        assert build_fingerprint("ITEM_VIEWED", "c1", None, None) == fnv1a32_hex("ITEM_VIEWED|c1||")

    def test_unserialisable_payload(self):
        fp = build_fingerprint("ITEM_VIEWED", "c1", "u1", {"x": object()})
        assert fp == fnv1a32_hex(f"ITEM_VIEWED|c1|u1|{UNSTRINGIFIABLE}")

    def test_payload_key_order_matters(self):
        a = build_fingerprint("ITEM_UPDATED", "c1", "u1", {"a": 1, "b": 2})
        b = build_fingerprint("ITEM_UPDATED", "c1", "u1", {"b": 2, "a": 1})
        assert a != b


class TestWritePolicy:
    """Tests for is_client_writable."""

    @pytest.mark.parametrize(
        "event_type",
        [
            "CONTAINER_CREATED",
            "SUBCONTAINER_UPDATED",
            "ITEM_SHARED",
            "ITEM_SHARE_REVOKED",
            "CONTAINER_DELETE_REQUESTED",
            "CONTAINER_OWNERSHIP_TRANSFERRED",
            "ITEM_VIEWED",
            "ITEM_MOVED_IN",
            "SUBCONTAINER_MOVED_OUT",
        ],
    )
    def test_allowed(self, event_type):
        assert is_client_writable(event_type) is True

    @pytest.mark.parametrize(
        "event_type",
        ["ITEM_FIELD_CHANGED", "CONTAINER_MOVED_OUT", "USER_CREATED", "", None],
    )
    def test_rejected(self, event_type):
        assert is_client_writable(event_type) is False
