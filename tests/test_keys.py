"""
Unit tests for aggregation key encoding.
"""

import base64

import pytest

from billing_collector.core.keys import MalformedKey, decode_key, encode_key


class TestKeyEncoding:
    """Test key encoding and decoding."""

    def test_round_trip(self):
        """Verify fields survive encoding in order."""
        key = encode_key("my-namespace", "startup-4", "pg")
        assert decode_key(key) == ["my-namespace", "startup-4", "pg"]

    def test_round_trip_with_empty_fields(self):
        """Verify empty fields are preserved, including leading and trailing ones."""
        assert decode_key(encode_key("", "plan", "")) == ["", "plan", ""]

    def test_round_trip_with_non_ascii(self):
        assert decode_key(encode_key("namespace-ü", "größe")) == ["namespace-ü", "größe"]

    def test_key_is_base64_of_joined_fields(self):
        """Verify the key format stays compatible with previously stored keys."""
        assert encode_key("a", "b") == base64.urlsafe_b64encode(b"a;b").decode("ascii")

    def test_equal_fields_give_equal_keys(self):
        assert encode_key("ns", "plan") == encode_key("ns", "plan")
        assert encode_key("ns", "plan") != encode_key("plan", "ns")

    def test_no_fields_raises_error(self):
        with pytest.raises(ValueError, match="at least one field"):
            encode_key()

    def test_delimiter_in_field_raises_error(self):
        """Verify fields containing the delimiter are rejected instead of corrupting the key."""
        with pytest.raises(ValueError, match="contains delimiter"):
            encode_key("a;b", "c")


class TestMalformedKeys:
    """Test decoding of invalid keys."""

    def test_invalid_base64_raises_error(self):
        with pytest.raises(MalformedKey):
            decode_key("not base64!")

    def test_invalid_utf8_raises_error(self):
        key = base64.urlsafe_b64encode(b"\xff\xfe").decode("ascii")
        with pytest.raises(MalformedKey):
            decode_key(key)

    def test_non_string_raises_error(self):
        with pytest.raises(MalformedKey, match="must be a string"):
            decode_key(None)

    def test_malformed_key_is_value_error(self):
        with pytest.raises(ValueError):
            decode_key("%%%")

    def test_empty_key_is_single_empty_field(self):
        """Verify the empty key is the encoding of one empty field, not of no fields."""
        assert encode_key("") == ""
        assert decode_key("") == [""]
