"""
Aggregation key encoding.

Packs an ordered list of free-text fields into one opaque, reversible key.
"""

import base64
import binascii
from typing import List, NewType

Key = NewType("Key", str)

FIELD_DELIMITER = ";"


class MalformedKey(ValueError):
    """Raised when a key cannot be decoded back into its fields."""


def encode_key(*fields: str) -> Key:
    """Encode fields into a URL-safe base64 key.

    Args:
        *fields: Ordered fields such as namespace, plan and resource type

    Returns:
        The encoded key

    Raises:
        ValueError: If no field is given or a field contains the delimiter
    """
    if not fields:
        raise ValueError("at least one field is required to build a key")
    for field in fields:
        if FIELD_DELIMITER in field:
            raise ValueError(f"key field {field!r} contains delimiter {FIELD_DELIMITER!r}")

    joined = FIELD_DELIMITER.join(fields).encode("utf-8")
    return Key(base64.urlsafe_b64encode(joined).decode("ascii"))


def decode_key(key: str) -> List[str]:
    """Decode a key produced by encode_key.

    A key always holds at least one field. The empty key is what
    ``encode_key("")`` produces, so it decodes to one empty field, ``[""]``.

    Args:
        key: Encoded key

    Returns:
        The original fields, in order

    Raises:
        MalformedKey: If the key is not valid base64 text
    """
    if not isinstance(key, str):
        raise MalformedKey(f"key must be a string, got {type(key).__name__}")
    try:
        raw = base64.b64decode(key.encode("ascii"), altchars=b"-_", validate=True)
        decoded = raw.decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise MalformedKey(f"cannot decode key {key!r}: {e}") from e
    return decoded.split(FIELD_DELIMITER)
