"""Identifier helpers.

All stored entities use 32-character lowercase hex identifiers
(``uuid.uuid4().hex``). Anything else coming from a client is malformed.
"""
import re
import uuid
from typing import Any

ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_id(value: Any) -> bool:
    """Check that *value* is a storage-compatible identifier."""
    return isinstance(value, str) and bool(ID_PATTERN.match(value))
